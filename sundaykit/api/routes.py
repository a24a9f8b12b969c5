from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path

from sundaykit.api.schemas import (
    DatabaseSetupResponse,
    Envelope,
    ProvisionRequest,
    ProvisionResponse,
    SampleCountsResponse,
    TrainingStatusResponse,
    WorkspaceStatusResponse,
)
from sundaykit.logging import get_logger
from sundaykit.service.errors import ServiceError
from sundaykit.service.runtime import get_runtime

logger = get_logger(__name__)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def require_internal_token(authorization: Optional[str] = Header(None)) -> None:
    """Bearer check against INTERNAL_API_TOKEN; open when no token is configured."""
    expected = get_runtime().settings.internal_api_token
    if not expected:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise _http_error("unauthorized", "invalid or missing bearer token", status_code=401)



router = APIRouter(prefix="/v1", dependencies=[Depends(require_internal_token)])


@router.post(
    "/workspaces/provision",
    response_model=Envelope,
    status_code=202,
    tags=["workspaces"],
)
async def provision_workspace(body: ProvisionRequest):
    """Start provisioning, or report the existing workspace.

    Never waits for the workspace itself; poll the status route for progress.
    """
    runtime = get_runtime()
    outcome = await runtime.provisioning.provision(
        body.user_id, body.display_name, body.email
    )
    snapshot = await runtime.provisioning.status_snapshot(outcome.workspace.user_id)
    return Envelope(
        status="ok",
        data=ProvisionResponse(
            state=outcome.state,
            workspace=WorkspaceStatusResponse(**snapshot),
        ),
    )


@router.get("/workspaces/{user_id}/status", response_model=Envelope, tags=["workspaces"])
async def workspace_status(user_id: str = Path(..., min_length=1, max_length=128)):
    runtime = get_runtime()
    snapshot = await runtime.provisioning.status_snapshot(user_id)
    return Envelope(status="ok", data=WorkspaceStatusResponse(**snapshot))


@router.post(
    "/workspaces/{user_id}/database/setup",
    response_model=Envelope,
    tags=["workspaces"],
)
async def setup_database(user_id: str = Path(..., min_length=1, max_length=128)):
    """Create the user's schema and register it inside the workspace.

    Raises:
        400: preconditions unmet (no project, not ready, missing credentials)
        404: unknown user
        502: a bootstrap step failed; ``details.stage`` names it
    """
    runtime = get_runtime()
    result = await runtime.bootstrap.run(user_id)
    if not result.ok:
        raise ServiceError(
            result.error or "database setup failed",
            status_code=502,
            error_code="upstream_error",
            detail={
                "stage": result.stage,
                "schema_initialized": result.schema_initialized,
            },
        )
    return Envelope(status="ok", data=DatabaseSetupResponse(**result.as_dict()))


@router.post("/training/{user_id}", response_model=Envelope, status_code=202, tags=["training"])
async def start_training(user_id: str = Path(..., min_length=1, max_length=128)):
    runtime = get_runtime()
    status = await runtime.training.start(user_id)
    return Envelope(status="ok", data=TrainingStatusResponse(**status))


@router.get("/training/{user_id}", response_model=Envelope, tags=["training"])
async def training_status(user_id: str = Path(..., min_length=1, max_length=128)):
    runtime = get_runtime()
    status = await runtime.training.status(user_id)
    return Envelope(status="ok", data=TrainingStatusResponse(**status))


@router.delete("/training/{user_id}", response_model=Envelope, tags=["training"])
async def cancel_training(user_id: str = Path(..., min_length=1, max_length=128)):
    runtime = get_runtime()
    status = await runtime.training.cancel(user_id)
    return Envelope(status="ok", data=TrainingStatusResponse(**status))


@router.post("/training/{user_id}/sync-counts", response_model=Envelope, tags=["training"])
async def sync_training_counts(user_id: str = Path(..., min_length=1, max_length=128)):
    runtime = get_runtime()
    counts = await runtime.training.sync_counts(user_id)
    return Envelope(status="ok", data=SampleCountsResponse(**counts))
