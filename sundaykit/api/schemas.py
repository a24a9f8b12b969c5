from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "not_found",
    "conflict",
    "server_error",
    "upstream_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class ProvisionRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    display_name: str = Field(..., min_length=1, max_length=256)
    email: str

    @field_validator("user_id", "display_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class WorkspaceStatusResponse(BaseModel):
    user_id: str
    status: str
    url: Optional[str] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    workspace_ready: bool = False
    has_api_key: bool = False
    postgres_schema_initialized: bool = False
    has_database_credential: bool = False
    setup_error: Optional[str] = None
    monitoring_active: bool = False
    updated_at: Optional[str] = None


class ProvisionResponse(BaseModel):
    state: str = Field(
        ...,
        pattern="^(started|monitoring_active|ready|existing|manual|failed)$",
    )
    workspace: WorkspaceStatusResponse


class DatabaseSetupResponse(BaseModel):
    ok: bool
    stage: str
    schema_initialized: bool
    credential_id: Optional[str] = None
    error: Optional[str] = None


class TrainingStats(BaseModel):
    good: int = 0
    bad: int = 0
    mcl: int = 0
    total: int = 0
    required_total: int
    required_good: int
    ready_to_train: bool = False


class TrainingStatusResponse(BaseModel):
    status: str
    adapter_version: Optional[str] = None
    job_id: Optional[str] = None
    run_id: Optional[str] = None
    last_trained_at: Optional[str] = None
    error: Optional[str] = None
    stats: TrainingStats
    monitoring_active: bool = False


class SampleCountsResponse(BaseModel):
    good: int
    bad: int
    mcl: int
    total: int


class HealthResponse(BaseModel):
    status: str
    store: str
    redis_enabled: bool
