"""Background loop that drives a workspace from template run to ``ready``.

Phase 1 resolves the project id from the template run; phase 2 waits for the
workspace host secret to hold a real value, then mints an API key and marks
the workspace ready. Every observed step is written to the store right away.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from sundaykit.logging import get_logger, sanitize_error_message
from sundaykit.service.n8n import derive_workspace_password
from sundaykit.storage.models import (
    IN_PROGRESS_STATUSES,
    MonitorKind,
    ProjectStatus,
    UserWorkspace,
)

if TYPE_CHECKING:
    from sundaykit.config import Settings
    from sundaykit.service.bootstrap import DatabaseBootstrap
    from sundaykit.service.monitors import MonitorRegistry
    from sundaykit.service.n8n import N8nClient
    from sundaykit.service.northflank import NorthflankClient, WorkspaceHost
    from sundaykit.service.shared_services import SharedServices
    from sundaykit.storage.memory import MemoryStore
    from sundaykit.storage.postgres import PostgresStore

logger = get_logger(__name__)

_WATCHED_STATUSES = IN_PROGRESS_STATUSES | {ProjectStatus.MANUAL}


@dataclass
class ProvisioningJob:
    user_id: str
    email: str
    encryption_key: str
    fallback_api_key: str
    template_run_id: Optional[str] = None
    project_id: Optional[str] = None

    @classmethod
    def from_workspace(cls, workspace: UserWorkspace) -> "ProvisioningJob":
        return cls(
            user_id=workspace.user_id,
            email=workspace.email or "",
            encryption_key=workspace.encryption_key or "",
            fallback_api_key=workspace.api_key or "",
            template_run_id=workspace.template_run_id,
            project_id=workspace.project_id,
        )


class ProvisioningMonitor:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        platform: "NorthflankClient",
        workspace_api: "N8nClient",
        settings: "Settings",
        *,
        shared_services: Optional["SharedServices"] = None,
        bootstrap: Optional["DatabaseBootstrap"] = None,
        monitors: Optional["MonitorRegistry"] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.platform = platform
        self.workspace_api = workspace_api
        self.settings = settings
        self.shared_services = shared_services
        self.bootstrap = bootstrap
        self.monitors = monitors
        self._sleep = sleep
        self._clock = clock

    @property
    def lease_seconds(self) -> float:
        return self.settings.provision_time_budget_seconds + self.settings.monitor_lease_margin_seconds

    async def run(self, job: ProvisioningJob) -> ProjectStatus:
        """Poll until ready or the time budget runs out; never raises."""
        budget = self.settings.provision_time_budget_seconds
        interval = self.settings.provision_poll_interval_seconds
        deadline = self._clock() + budget
        project_id = job.project_id
        polls = 0
        logger.info(
            "provisioning_monitor_started",
            user_id=job.user_id,
            template_run_id=job.template_run_id,
            project_id=project_id,
            budget_seconds=budget,
        )
        if project_id:
            self._mark_deploying(job.user_id, project_id)

        while True:
            polls += 1
            try:
                workspace = await asyncio.to_thread(self.store.get_workspace, job.user_id)
                if not self._still_owned(workspace, job):
                    logger.info("provisioning_monitor_superseded", user_id=job.user_id, polls=polls)
                    return workspace.project_status if workspace else ProjectStatus.UNINITIATED
                if not project_id:
                    project_id = await self._discover_project(job)
                if project_id:
                    host = await self.platform.find_workspace_host(project_id)
                    if host is not None:
                        # Key minting and bootstrap can outlast the polling budget
                        if not await self._extend_lease(job):
                            current = self.store.get_workspace(job.user_id)
                            return current.project_status if current else ProjectStatus.UNINITIATED
                        await self._finalize(job, project_id, host)
                        logger.info("provisioning_monitor_ready", user_id=job.user_id, polls=polls)
                        return ProjectStatus.READY
                    logger.debug("workspace_host_pending", user_id=job.user_id, project_id=project_id, poll=polls)
            except Exception as exc:
                logger.warning(
                    "provisioning_poll_failed",
                    user_id=job.user_id,
                    poll=polls,
                    error=sanitize_error_message(exc),
                    error_type=type(exc).__name__,
                )
            if self._clock() >= deadline:
                break
            await self._sleep(interval)

        return self._mark_timeout(job, project_id, budget)

    async def _extend_lease(self, job: ProvisioningJob) -> bool:
        if self.monitors is None:
            return True
        return await self.monitors.extend(MonitorKind.PROVISIONING, job.user_id, self.lease_seconds)

    def _still_owned(self, workspace: Optional[UserWorkspace], job: ProvisioningJob) -> bool:
        if workspace is None or workspace.project_status not in _WATCHED_STATUSES:
            return False
        # A reset and re-provision swaps the secrets; this loop is then stale
        return workspace.encryption_key == job.encryption_key

    def _mark_deploying(self, user_id: str, project_id: str) -> None:
        try:
            workspace = self.store.get_workspace(user_id)
            if workspace and workspace.project_status == ProjectStatus.INITIATED:
                self.store.update_workspace(
                    user_id, project_id=project_id, project_status=ProjectStatus.DEPLOYING
                )
        except Exception as exc:
            logger.warning("provisioning_mark_deploying_failed", user_id=user_id, error=str(exc))

    async def _discover_project(self, job: ProvisioningJob) -> Optional[str]:
        if not job.template_run_id:
            return None
        project_id = await self.platform.resolve_project_id(job.template_run_id)
        if not project_id:
            logger.debug("provisioning_project_pending", user_id=job.user_id, template_run_id=job.template_run_id)
            return None
        workspace = self.store.get_workspace(job.user_id)
        fields: dict = {"project_id": project_id}
        if workspace and workspace.project_status == ProjectStatus.INITIATED:
            fields["project_status"] = ProjectStatus.DEPLOYING
        self.store.update_workspace(job.user_id, **fields)
        logger.info("provisioning_project_discovered", user_id=job.user_id, project_id=project_id)
        if self.shared_services:
            await self.shared_services.grant_ingress(project_id)
        return project_id

    async def _project_name(self, project_id: str) -> Optional[str]:
        try:
            project = await self.platform.get_project(project_id)
        except Exception as exc:
            logger.warning("provisioning_project_name_failed", project_id=project_id, error=str(exc))
            return None
        return (project or {}).get("name")

    def _backoff(self, attempt: int) -> float:
        delay = self.settings.api_key_mint_backoff_seconds * (
            self.settings.api_key_mint_backoff_multiplier ** (attempt - 1)
        )
        return min(delay, self.settings.api_key_mint_backoff_cap_seconds)

    async def mint_api_key(self, url: str, job: ProvisioningJob) -> str:
        """Mint a key on the live workspace, falling back to the pre-generated one."""
        password = derive_workspace_password(
            self.settings.workspace_password_prefix, job.encryption_key
        )
        attempts = max(1, self.settings.api_key_mint_attempts)
        await self._sleep(self.settings.workspace_boot_grace_seconds)
        for attempt in range(1, attempts + 1):
            try:
                if await self.workspace_api.health(url):
                    api_key = await self.workspace_api.create_api_key(url, job.email, password)
                    logger.info("workspace_api_key_minted", user_id=job.user_id, attempt=attempt)
                    return api_key
                logger.info("workspace_not_healthy", user_id=job.user_id, attempt=attempt)
            except Exception as exc:
                logger.warning(
                    "workspace_api_key_attempt_failed",
                    user_id=job.user_id,
                    attempt=attempt,
                    error=sanitize_error_message(exc),
                )
            if attempt < attempts:
                await self._sleep(self._backoff(attempt))
        logger.warning("workspace_api_key_fallback", user_id=job.user_id, attempts=attempts)
        return job.fallback_api_key

    async def _finalize(
        self, job: ProvisioningJob, project_id: str, host: "WorkspaceHost"
    ) -> None:
        project_name = await self._project_name(project_id)
        if self.shared_services:
            await self.shared_services.configure_workspace_env(project_id, job.user_id)
        api_key = await self.mint_api_key(host.url, job)
        self.store.update_workspace(
            job.user_id,
            project_status=ProjectStatus.READY,
            project_id=project_id,
            project_name=project_name,
            workspace_url=host.url,
            api_key=api_key,
            secret_snapshot=host.secrets,
            template_completed_at=datetime.utcnow(),
            setup_error=None,
        )
        if self.bootstrap and self.settings.auto_bootstrap_database:
            try:
                result = await self.bootstrap.run(job.user_id)
                logger.info(
                    "provisioning_auto_bootstrap",
                    user_id=job.user_id,
                    ok=result.ok,
                    stage=result.stage,
                )
            except Exception as exc:
                logger.warning(
                    "provisioning_auto_bootstrap_failed",
                    user_id=job.user_id,
                    error=sanitize_error_message(exc),
                )

    def _mark_timeout(
        self, job: ProvisioningJob, project_id: Optional[str], budget: float
    ) -> ProjectStatus:
        minutes = int(budget // 60) or 1
        message = (
            f"workspace host not available within {minutes} minutes"
            if project_id
            else f"platform project not created within {minutes} minutes"
        )
        try:
            self.store.update_workspace(
                job.user_id, project_status=ProjectStatus.TIMEOUT, setup_error=message
            )
        except Exception as exc:
            logger.error("provisioning_timeout_persist_failed", user_id=job.user_id, error=str(exc))
        logger.warning(
            "provisioning_monitor_timeout",
            user_id=job.user_id,
            project_id=project_id,
            budget_seconds=budget,
        )
        return ProjectStatus.TIMEOUT
