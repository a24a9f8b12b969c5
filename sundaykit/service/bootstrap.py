from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sundaykit.logging import get_logger, sanitize_error_message
from sundaykit.service.errors import NotFoundError, PlatformError, ValidationError
from sundaykit.service.n8n import derive_workspace_password
from sundaykit.storage.models import ProjectStatus

if TYPE_CHECKING:
    from sundaykit.config import Settings
    from sundaykit.service.n8n import N8nClient
    from sundaykit.service.northflank import NorthflankClient
    from sundaykit.service.user_db import UserDatabase
    from sundaykit.storage.memory import MemoryStore
    from sundaykit.storage.postgres import PostgresStore

logger = get_logger(__name__)


@dataclass
class BootstrapResult:
    ok: bool
    stage: str
    schema_initialized: bool
    credential_id: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


class DatabaseBootstrap:
    """Create the per-user schema and register it as a workspace credential.

    The two steps are recorded separately: once the schema exists a retry only
    repeats credential registration.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        platform: "NorthflankClient",
        workspace_api: "N8nClient",
        user_db: "UserDatabase",
        settings: "Settings",
    ) -> None:
        self.store = store
        self.platform = platform
        self.workspace_api = workspace_api
        self.user_db = user_db
        self.settings = settings

    def _check_preconditions(self, user_id: str):
        workspace = self.store.get_workspace(user_id)
        if workspace is None:
            raise NotFoundError("workspace not found", detail={"user_id": user_id})
        if workspace.database_ready:
            return workspace, True
        if not workspace.project_id:
            raise ValidationError(
                "workspace has no platform project",
                detail={"reason": "no_project"},
            )
        if workspace.project_status != ProjectStatus.READY:
            raise ValidationError(
                "workspace is not ready",
                detail={"reason": "not_ready", "status": workspace.project_status.value},
            )
        missing = [
            name
            for name, value in (
                ("workspace_url", workspace.workspace_url),
                ("encryption_key", workspace.encryption_key),
                ("email", workspace.email),
            )
            if not value
        ]
        if missing:
            raise ValidationError(
                "workspace credentials are incomplete",
                detail={"reason": "missing_credentials", "missing": missing},
            )
        return workspace, False

    async def _credential_present(self, workspace) -> bool:
        if not (workspace.workspace_url and workspace.email and workspace.encryption_key):
            return True
        password = derive_workspace_password(
            self.settings.workspace_password_prefix, workspace.encryption_key
        )
        return await self.workspace_api.verify_credential(
            workspace.workspace_url, workspace.email, password, workspace.n8n_credential_id
        )

    async def run(self, user_id: str) -> BootstrapResult:
        workspace, done = self._check_preconditions(user_id)
        if done:
            if await self._credential_present(workspace):
                logger.info("database_bootstrap_already_done", user_id=user_id)
                return BootstrapResult(
                    ok=True,
                    stage="already_initialized",
                    schema_initialized=True,
                    credential_id=workspace.n8n_credential_id,
                )
            # Deleted in the workspace; only registration is repeated
            logger.warning(
                "database_credential_gone",
                user_id=user_id,
                credential_id=workspace.n8n_credential_id,
            )
            self.store.update_workspace(user_id, n8n_credential_id=None)
            workspace, _ = self._check_preconditions(user_id)

        schema_initialized = workspace.postgres_schema_initialized
        connection = None
        try:
            connection = await self.platform.resolve_postgres_connection(
                workspace.project_id,
                settle_seconds=self.settings.addon_resume_settle_seconds,
            )
            if connection is None:
                raise PlatformError("postgres addon connection details are unavailable")
            if not schema_initialized:
                await self.user_db.initialize_schema(connection)
                self.store.update_workspace(
                    user_id,
                    postgres_schema_initialized=True,
                    postgres_setup_at=datetime.utcnow(),
                    setup_error=None,
                )
                schema_initialized = True
                logger.info("database_schema_ready", user_id=user_id, **connection.redacted())
            else:
                logger.info("database_schema_skipped", user_id=user_id)
        except Exception as exc:
            error = sanitize_error_message(exc)
            stage = "credential" if schema_initialized else "schema"
            logger.warning("database_bootstrap_failed", user_id=user_id, stage=stage, error=error)
            self.store.update_workspace(user_id, setup_error=error)
            return BootstrapResult(
                ok=False, stage=stage, schema_initialized=schema_initialized, error=error
            )

        password = derive_workspace_password(
            self.settings.workspace_password_prefix, workspace.encryption_key
        )
        try:
            credential_id = await self.workspace_api.create_postgres_credential(
                workspace.workspace_url,
                workspace.email,
                password,
                connection,
                schema=self.settings.user_data_schema,
            )
        except Exception as exc:
            error = sanitize_error_message(exc)
            logger.warning(
                "database_credential_failed", user_id=user_id, error=error
            )
            # Schema stays in place; only registration is retried next time
            self.store.update_workspace(
                user_id, postgres_schema_initialized=True, setup_error=error
            )
            return BootstrapResult(
                ok=False, stage="credential", schema_initialized=True, error=error
            )

        self.store.update_workspace(
            user_id,
            n8n_credential_id=credential_id,
            postgres_setup_at=datetime.utcnow(),
            setup_error=None,
        )
        logger.info("database_bootstrap_complete", user_id=user_id, credential_id=credential_id)
        return BootstrapResult(
            ok=True,
            stage="complete",
            schema_initialized=True,
            credential_id=credential_id,
        )
