"""Helpers shared by the in-memory and Postgres credential stores."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from sundaykit.storage.errors import InvalidStatusTransition
from sundaykit.storage.models import (
    SECRET_FIELDS,
    WORKSPACE_MUTABLE_FIELDS,
    ProjectStatus,
    TrainingStatus,
    UserWorkspace,
    can_transition,
)

_DATETIME_FIELDS = (
    "postgres_setup_at",
    "template_completed_at",
    "last_trained_at",
    "created_at",
    "updated_at",
)


class SecretCipher:
    """Fernet wrapper for workspace secrets stored at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("stored workspace secret cannot be decrypted with the configured key") from exc


def apply_workspace_update(workspace: UserWorkspace, fields: Dict[str, Any]) -> UserWorkspace:
    """Validate and apply a partial update in place.

    Raises:
        ValueError: an unknown field was passed
        InvalidStatusTransition: the project status would move illegally
    """
    unknown = set(fields) - WORKSPACE_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown workspace fields: {', '.join(sorted(unknown))}")

    if "project_status" in fields and fields["project_status"] is not None:
        target = ProjectStatus(fields["project_status"])
        if not can_transition(workspace.project_status, target):
            raise InvalidStatusTransition(
                workspace.user_id, workspace.project_status.value, target.value
            )
        fields = {**fields, "project_status": target}
    if "training_status" in fields and fields["training_status"] is not None:
        fields = {**fields, "training_status": TrainingStatus(fields["training_status"])}

    for name, value in fields.items():
        setattr(workspace, name, value)
    workspace.updated_at = datetime.utcnow()
    return workspace


def reset_provisioning_fields(workspace: UserWorkspace) -> UserWorkspace:
    """Return a workspace to ``uninitiated`` so provisioning can start from scratch."""
    workspace.project_id = None
    workspace.project_name = None
    workspace.project_status = ProjectStatus.UNINITIATED
    workspace.template_run_id = None
    workspace.workspace_url = None
    workspace.secret_snapshot = None
    workspace.template_completed_at = None
    workspace.postgres_schema_initialized = False
    workspace.n8n_credential_id = None
    workspace.postgres_setup_at = None
    workspace.updated_at = datetime.utcnow()
    return workspace


def serialize_workspace(
    workspace: UserWorkspace, cipher: Optional[SecretCipher] = None
) -> Dict[str, Any]:
    data: Dict[str, Any] = dict(workspace.__dict__)
    data["project_status"] = workspace.project_status.value
    data["training_status"] = workspace.training_status.value
    for name in _DATETIME_FIELDS:
        value = data.get(name)
        data[name] = value.isoformat() if value else None
    if cipher:
        for name in SECRET_FIELDS:
            data[name] = cipher.encrypt(data.get(name))
    return data


def deserialize_workspace(
    data: Dict[str, Any], cipher: Optional[SecretCipher] = None
) -> UserWorkspace:
    values = {k: v for k, v in data.items() if k in UserWorkspace.__dataclass_fields__}
    for name in _DATETIME_FIELDS:
        raw = values.get(name)
        if isinstance(raw, str):
            values[name] = datetime.fromisoformat(raw)
    values["project_status"] = ProjectStatus(values.get("project_status") or "uninitiated")
    values["training_status"] = TrainingStatus(values.get("training_status") or "idle")
    if cipher:
        for name in SECRET_FIELDS:
            values[name] = cipher.decrypt(values.get(name))
    created = values.get("created_at")
    updated = values.get("updated_at")
    if created is None:
        values.pop("created_at", None)
    if updated is None:
        values.pop("updated_at", None)
    return UserWorkspace(**values)
