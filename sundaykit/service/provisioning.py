from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from sundaykit.logging import get_logger, sanitize_error_message
from sundaykit.service.errors import NotFoundError, PlatformError, ValidationError
from sundaykit.service.reconciler import ProvisioningJob
from sundaykit.storage.models import (
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    MonitorKind,
    ProjectStatus,
    UserWorkspace,
)

if TYPE_CHECKING:
    from sundaykit.config import Settings
    from sundaykit.service.monitors import MonitorRegistry
    from sundaykit.service.northflank import NorthflankClient
    from sundaykit.service.reconciler import ProvisioningMonitor
    from sundaykit.storage.memory import MemoryStore
    from sundaykit.storage.postgres import PostgresStore

logger = get_logger(__name__)

_KEY_ALPHABET = string.ascii_letters + string.digits


def generate_encryption_key() -> str:
    return secrets.token_hex(16)


def generate_fallback_api_key() -> str:
    return "n8n_" + "".join(secrets.choice(_KEY_ALPHABET) for _ in range(32))


def manual_project_name(user_id: str) -> str:
    suffix = str(int(time.time() * 1000))[-6:]
    return f"sunday-{user_id[:8]}-{suffix}".lower()


def _first_name(display_name: str, email: str) -> str:
    parts = (display_name or "").split()
    if parts:
        return parts[0]
    return (email or "").split("@")[0]


_LAUNCHED_STATES = frozenset({"started", "existing"})


def _resumable(workspace: Optional[UserWorkspace]) -> bool:
    return bool(
        workspace is not None
        and workspace.project_status in IN_PROGRESS_STATUSES
        and workspace.encryption_key
        and (workspace.template_run_id or workspace.project_id)
    )


@dataclass
class ProvisionOutcome:
    """Result of a provisioning request.

    ``state`` is one of started, monitoring_active, ready, existing, manual, failed.
    """

    state: str
    workspace: UserWorkspace


class ProvisioningService:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        platform: "NorthflankClient",
        monitors: "MonitorRegistry",
        monitor: "ProvisioningMonitor",
        settings: "Settings",
    ) -> None:
        self.store = store
        self.platform = platform
        self.monitors = monitors
        self.monitor = monitor
        self.settings = settings

    @staticmethod
    def _validate_identity(user_id: str, display_name: str, email: str) -> None:
        missing = [
            name
            for name, value in (
                ("user_id", user_id),
                ("display_name", display_name),
                ("email", email),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError(
                "user identity is incomplete", detail={"missing": missing}
            )
        if "@" not in email:
            raise ValidationError("email address is invalid", detail={"field": "email"})

    async def provision(
        self, user_id: str, display_name: str, email: str
    ) -> ProvisionOutcome:
        """Start or resume provisioning; returns without waiting for the workspace.

        The monitor claim is taken before any write, and every decision is made
        from a snapshot read after claiming, so overlapping calls for the same
        user cannot reset or re-trigger each other's work.
        """
        self._validate_identity(user_id, display_name, email)
        user_id = user_id.strip()
        workspace = self.store.ensure_workspace(
            user_id, email=email.strip(), display_name=display_name.strip()
        )

        if workspace.project_status == ProjectStatus.READY:
            return ProvisionOutcome("ready", workspace)
        if await self.monitors.is_active(MonitorKind.PROVISIONING, user_id):
            logger.info("provision_monitor_already_active", user_id=user_id)
            return ProvisionOutcome("monitoring_active", workspace)
        if not await self.monitors.claim(
            MonitorKind.PROVISIONING, user_id, self.monitor.lease_seconds
        ):
            logger.info("provision_claim_lost", user_id=user_id)
            return ProvisionOutcome("monitoring_active", self.store.get_workspace(user_id))

        outcome: Optional[ProvisionOutcome] = None
        try:
            outcome = await self._provision_claimed(user_id, display_name.strip(), email.strip())
            return outcome
        finally:
            if outcome is None or outcome.state not in _LAUNCHED_STATES:
                await self.monitors.release(MonitorKind.PROVISIONING, user_id)

    async def _provision_claimed(
        self, user_id: str, display_name: str, email: str
    ) -> ProvisionOutcome:
        workspace = self.store.get_workspace(user_id)
        if workspace.project_status == ProjectStatus.READY:
            return ProvisionOutcome("ready", workspace)

        if workspace.project_status in TERMINAL_STATUSES:
            logger.info(
                "provision_retry_after_terminal",
                user_id=user_id,
                previous_status=workspace.project_status.value,
            )
            workspace = self.store.reset_workspace(user_id)
        elif workspace.project_id:
            project = await self.platform.get_project(workspace.project_id)
            if project is not None:
                if workspace.project_status == ProjectStatus.MANUAL:
                    return ProvisionOutcome("manual", workspace)
                return self._launch_resumed(workspace)
            logger.warning(
                "provision_project_vanished",
                user_id=user_id,
                project_id=workspace.project_id,
            )
            workspace = self.store.reset_workspace(user_id)
            return await self._create_manual(workspace, reason="platform project no longer exists")
        elif (
            workspace.project_status in IN_PROGRESS_STATUSES
            and workspace.template_run_id
            and workspace.encryption_key
        ):
            return self._launch_resumed(workspace)

        return await self._start(workspace, display_name, email)

    def _template_arguments(
        self, workspace: UserWorkspace, encryption_key: str
    ) -> Dict[str, Any]:
        return {
            "id": workspace.user_id[:8],
            "user_id": workspace.user_id,
            "user_email": workspace.email,
            "user_name": _first_name(workspace.display_name or "", workspace.email or ""),
            "webhook_url": self.settings.webhook_url,
            "webhook_token": self.settings.webhook_token,
            "N8N_ENCRYPTION_KEY": encryption_key,
            "neon_database_url": self.settings.template_database_url,
            "google_oauth_client_id": self.settings.google_oauth_client_id,
            "google_oauth_client_secret": self.settings.google_oauth_client_secret,
        }

    async def _start(
        self, workspace: UserWorkspace, display_name: str, email: str
    ) -> ProvisionOutcome:
        """Trigger the template run; the caller holds the monitor claim."""
        user_id = workspace.user_id
        missing = self.settings.missing_template_settings()
        if missing:
            message = f"missing required configuration: {', '.join(missing)}"
            logger.error("provision_config_missing", user_id=user_id, missing=missing)
            workspace = self.store.update_workspace(
                user_id, project_status=ProjectStatus.FAILED, setup_error=message
            )
            return ProvisionOutcome("failed", workspace)

        encryption_key = generate_encryption_key()
        fallback_api_key = generate_fallback_api_key()
        # Secrets are stored before any network call so a crash cannot lose them
        workspace = self.store.update_workspace(
            user_id,
            project_status=ProjectStatus.INITIATED,
            encryption_key=encryption_key,
            api_key=fallback_api_key,
            email=workspace.email or email,
            display_name=workspace.display_name or display_name,
            setup_error=None,
        )
        try:
            run = await self.platform.trigger_template_run(
                self._template_arguments(workspace, encryption_key)
            )
        except PlatformError as exc:
            logger.warning(
                "provision_template_rejected",
                user_id=user_id,
                error=sanitize_error_message(exc),
            )
            return await self._create_manual(workspace, reason=sanitize_error_message(exc))

        workspace = self.store.update_workspace(user_id, template_run_id=run["id"])
        job = ProvisioningJob(
            user_id=user_id,
            email=workspace.email,
            encryption_key=encryption_key,
            fallback_api_key=fallback_api_key,
            template_run_id=run["id"],
        )
        self.monitors.launch(MonitorKind.PROVISIONING, user_id, self.monitor.run(job))
        logger.info("provision_started", user_id=user_id, template_run_id=run["id"])
        return ProvisionOutcome("started", workspace)

    def _launch_resumed(self, workspace: UserWorkspace) -> ProvisionOutcome:
        user_id = workspace.user_id
        job = ProvisioningJob.from_workspace(workspace)
        self.monitors.launch(MonitorKind.PROVISIONING, user_id, self.monitor.run(job))
        logger.info(
            "provision_resumed",
            user_id=user_id,
            project_id=workspace.project_id,
            status=workspace.project_status.value,
        )
        return ProvisionOutcome("existing", workspace)

    async def _resume(self, user_id: str) -> bool:
        """Claim and relaunch one in-flight workspace; False when nothing was launched."""
        if not await self.monitors.claim(
            MonitorKind.PROVISIONING, user_id, self.monitor.lease_seconds
        ):
            return False
        workspace = self.store.get_workspace(user_id)
        if _resumable(workspace):
            self._launch_resumed(workspace)
            return True
        await self.monitors.release(MonitorKind.PROVISIONING, user_id)
        return False

    async def _create_manual(
        self, workspace: UserWorkspace, *, reason: Optional[str] = None
    ) -> ProvisionOutcome:
        """Degraded path: a bare project; the automation workspace is set up out of band."""
        user_id = workspace.user_id
        name = manual_project_name(user_id)
        try:
            project = await self.platform.create_project(
                name,
                description=f"Sunday workspace for {workspace.display_name or workspace.email}",
            )
        except PlatformError as exc:
            message = f"manual project creation failed: {sanitize_error_message(exc)}"
            logger.error("provision_manual_failed", user_id=user_id, error=message)
            workspace = self.store.update_workspace(
                user_id, project_status=ProjectStatus.FAILED, setup_error=message
            )
            return ProvisionOutcome("failed", workspace)

        note = "automation workspace must be created manually"
        workspace = self.store.update_workspace(
            user_id,
            project_status=ProjectStatus.MANUAL,
            project_id=project["id"],
            project_name=project.get("name") or name,
            setup_error=f"{note}: {reason}" if reason else note,
        )
        logger.info("provision_manual_project", user_id=user_id, project_id=project["id"])
        return ProvisionOutcome("manual", workspace)

    async def status_snapshot(self, user_id: str) -> Dict[str, Any]:
        workspace = self.store.get_workspace(user_id)
        if workspace is None:
            raise NotFoundError("workspace not found", detail={"user_id": user_id})
        return {
            "user_id": workspace.user_id,
            "status": workspace.project_status.value,
            "url": workspace.workspace_url,
            "project_id": workspace.project_id,
            "project_name": workspace.project_name,
            "workspace_ready": workspace.is_ready,
            "has_api_key": bool(workspace.api_key),
            "postgres_schema_initialized": workspace.postgres_schema_initialized,
            "has_database_credential": bool(workspace.n8n_credential_id),
            "setup_error": workspace.setup_error,
            "monitoring_active": await self.monitors.is_active(
                MonitorKind.PROVISIONING, user_id
            ),
            "updated_at": workspace.updated_at.isoformat(),
        }

    async def resume_inflight(self) -> int:
        """Relaunch loops for in-progress workspaces whose monitor died with its process."""
        resumed = 0
        for status in (ProjectStatus.INITIATED, ProjectStatus.DEPLOYING):
            for workspace in self.store.list_workspaces(project_status=status):
                if not _resumable(workspace):
                    continue
                if await self._resume(workspace.user_id):
                    resumed += 1
        logger.info("provisioning_monitors_resumed", count=resumed)
        return resumed
