from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from sundaykit.logging import get_logger, sanitize_error_message
from sundaykit.service.errors import (
    ConflictError,
    NotFoundError,
    PlatformError,
    ValidationError,
)
from sundaykit.storage.models import (
    MonitorKind,
    RunStatus,
    SampleCounts,
    TrainingRun,
    TrainingStatus,
    UserWorkspace,
)

if TYPE_CHECKING:
    from sundaykit.config import Settings
    from sundaykit.service.connection_info import ConnectionInfo
    from sundaykit.service.monitors import MonitorRegistry
    from sundaykit.service.northflank import NorthflankClient
    from sundaykit.service.user_db import UserDatabase
    from sundaykit.storage.memory import MemoryStore
    from sundaykit.storage.postgres import PostgresStore

logger = get_logger(__name__)

METADATA_START = "===METADATA_START==="
METADATA_END = "===METADATA_END==="


def extract_metadata(logs: str) -> Optional[Dict[str, Any]]:
    """JSON emitted by the training job between the metadata markers, if any."""
    if not logs:
        return None
    start = logs.find(METADATA_START)
    end = logs.find(METADATA_END, start + 1) if start != -1 else -1
    if start == -1 or end == -1:
        return None
    try:
        data = json.loads(logs[start + len(METADATA_START):end].strip())
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def new_adapter_version() -> str:
    return f"v{int(time.time() * 1000)}"


@dataclass
class TrainingJob:
    user_id: str
    project_id: str
    job_id: str
    run_id: str
    adapter_version: str
    connection: Optional["ConnectionInfo"] = None


class TrainingMonitor:
    """Polls a platform job run until it ends and mirrors the outcome."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        platform: "NorthflankClient",
        user_db: "UserDatabase",
        settings: "Settings",
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.platform = platform
        self.user_db = user_db
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    @property
    def lease_seconds(self) -> float:
        return self.settings.training_time_budget_seconds + self.settings.monitor_lease_margin_seconds

    def _cancelled(self, job: TrainingJob) -> bool:
        workspace = self.store.get_workspace(job.user_id)
        return (
            workspace is None
            or workspace.training_job_id != job.job_id
            or workspace.training_status == TrainingStatus.CANCELLED
        )

    async def run(self, job: TrainingJob) -> TrainingStatus:
        budget = self.settings.training_time_budget_seconds
        max_errors = self.settings.training_max_consecutive_errors
        deadline = self._clock() + budget
        consecutive_errors = 0
        logger.info(
            "training_monitor_started",
            user_id=job.user_id,
            job_id=job.job_id,
            run_id=job.run_id,
        )
        while True:
            await self._sleep(self.settings.training_poll_interval_seconds)
            if await asyncio.to_thread(self._cancelled, job):
                logger.info("training_monitor_stopped_cancelled", user_id=job.user_id, job_id=job.job_id)
                return TrainingStatus.CANCELLED
            try:
                run = await self.platform.get_job_run(
                    job.project_id, self.settings.training_job_name, job.run_id
                )
                if run is None:
                    raise PlatformError(f"job run {job.run_id} not found")
                consecutive_errors = 0
                if run.status == "succeeded":
                    return await self._complete(job)
                if run.status == "failed":
                    return await self._finish(
                        job, RunStatus.FAILED, error=run.error or "training job failed"
                    )
                if run.status == "cancelled":
                    return await self._finish(
                        job, RunStatus.CANCELLED, error="training job cancelled on the platform"
                    )
            except Exception as exc:
                consecutive_errors += 1
                error = sanitize_error_message(exc)
                logger.warning(
                    "training_poll_failed",
                    user_id=job.user_id,
                    job_id=job.job_id,
                    consecutive_errors=consecutive_errors,
                    error=error,
                )
                if consecutive_errors >= max_errors:
                    return await self._finish(
                        job,
                        RunStatus.FAILED,
                        error=f"monitoring failed {consecutive_errors} consecutive times: {error}",
                    )
            if self._clock() >= deadline:
                minutes = int(budget // 60) or 1
                return await self._finish(
                    job,
                    RunStatus.FAILED,
                    error=f"training monitor timed out after {minutes} minutes; job state unknown",
                )

    async def _complete(self, job: TrainingJob) -> TrainingStatus:
        metadata = None
        try:
            logs = await self.platform.get_job_run_logs(
                job.project_id,
                self.settings.training_job_name,
                job.run_id,
                tail=self.settings.training_log_tail,
            )
            metadata = extract_metadata(logs)
        except Exception as exc:
            logger.warning("training_metadata_unavailable", user_id=job.user_id, error=str(exc))
        return await self._finish(job, RunStatus.COMPLETED, metadata=metadata)

    async def _connection(self, job: TrainingJob) -> Optional["ConnectionInfo"]:
        if job.connection is None:
            job.connection = await self.platform.resolve_postgres_connection(
                job.project_id, settle_seconds=self.settings.addon_resume_settle_seconds
            )
        return job.connection

    async def record_run(self, job: TrainingJob, **columns: Any) -> None:
        """Mirror a change into the user's training_jobs log; failures are logged only."""
        try:
            connection = await self._connection(job)
            if connection is None:
                raise PlatformError("postgres connection unavailable")
            await self.user_db.update_training_run(connection, job.job_id, **columns)
        except Exception as exc:
            logger.warning(
                "training_run_log_failed",
                user_id=job.user_id,
                job_id=job.job_id,
                error=sanitize_error_message(exc),
            )

    async def _finish(
        self,
        job: TrainingJob,
        status: RunStatus,
        *,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TrainingStatus:
        # A user cancellation stands; the monitor never overwrites it
        if self._cancelled(job):
            logger.info("training_result_ignored_cancelled", user_id=job.user_id, job_id=job.job_id, outcome=status.value)
            return TrainingStatus.CANCELLED
        now = datetime.utcnow()
        fields: Dict[str, Any] = {"training_status": TrainingStatus(status.value)}
        if status == RunStatus.COMPLETED:
            fields.update(training_error=None, last_trained_at=now)
        else:
            fields["training_error"] = error
        self.store.update_workspace(job.user_id, **fields)
        await self.record_run(
            job,
            status=status,
            completed_at=now,
            error_message=error,
            metadata=metadata,
        )
        log_fn = logger.info if status == RunStatus.COMPLETED else logger.warning
        log_fn(
            "training_monitor_finished",
            user_id=job.user_id,
            job_id=job.job_id,
            status=status.value,
            error=error,
            has_metadata=metadata is not None,
        )
        return TrainingStatus(status.value)


class TrainingService:
    """Trigger, watch and cancel per-user LoRA training jobs."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        platform: "NorthflankClient",
        user_db: "UserDatabase",
        monitors: "MonitorRegistry",
        monitor: TrainingMonitor,
        settings: "Settings",
    ) -> None:
        self.store = store
        self.platform = platform
        self.user_db = user_db
        self.monitors = monitors
        self.monitor = monitor
        self.settings = settings

    def _get_workspace(self, user_id: str) -> UserWorkspace:
        workspace = self.store.get_workspace(user_id)
        if workspace is None:
            raise NotFoundError("workspace not found", detail={"user_id": user_id})
        return workspace

    def check_thresholds(self, counts: SampleCounts) -> None:
        min_total = self.settings.training_min_total_samples
        min_good = self.settings.training_min_primary_samples
        shortfall = {}
        if counts.total < min_total:
            shortfall["total"] = min_total - counts.total
        if counts.good < min_good:
            shortfall["good"] = min_good - counts.good
        if shortfall:
            raise ValidationError(
                "not enough training data",
                detail={
                    "required": {"total": min_total, "good": min_good},
                    "current": {**counts.as_dict(), "total": counts.total},
                    "shortfall": shortfall,
                },
            )

    async def start(self, user_id: str) -> Dict[str, Any]:
        workspace = self._get_workspace(user_id)
        if workspace.training_status == TrainingStatus.TRAINING:
            raise ConflictError(
                "training already in progress",
                detail={"status": "training", "adapter_version": workspace.adapter_version},
            )
        counts = SampleCounts(
            good=workspace.good_count, bad=workspace.bad_count, mcl=workspace.mcl_count
        )
        self.check_thresholds(counts)
        if not workspace.project_id:
            raise ValidationError(
                "workspace has no platform project", detail={"reason": "no_project"}
            )
        if not await self.monitors.claim(
            MonitorKind.TRAINING, user_id, self.monitor.lease_seconds
        ):
            raise ConflictError("training already in progress", detail={"status": "training"})

        launched = False
        try:
            try:
                connection = await self.platform.resolve_postgres_connection(
                    workspace.project_id,
                    settle_seconds=self.settings.addon_resume_settle_seconds,
                )
                if connection is None:
                    raise PlatformError("postgres connection unavailable")
                await self.user_db.auto_approve(
                    connection, user_id, min_quality=self.settings.training_min_quality_score
                )
                adapter_version = new_adapter_version()
                run = TrainingRun(
                    job_id=f"train-{user_id[:8]}-{adapter_version}",
                    user_id=user_id,
                    adapter_version=adapter_version,
                    status=RunStatus.RUNNING,
                    dataset_composition=counts,
                )
                await self.user_db.log_training_run(
                    connection, run, job_name=self.settings.training_job_name
                )
            except Exception as exc:
                error = sanitize_error_message(exc)
                logger.warning("training_prepare_failed", user_id=user_id, error=error)
                self.store.update_workspace(
                    user_id, training_status=TrainingStatus.FAILED, training_error=error
                )
                return await self.status(user_id)

            self.store.update_workspace(
                user_id,
                training_status=TrainingStatus.TRAINING,
                training_error=None,
                adapter_version=adapter_version,
                training_job_id=run.job_id,
                training_run_id=None,
            )
            job = TrainingJob(
                user_id=user_id,
                project_id=workspace.project_id,
                job_id=run.job_id,
                run_id="",
                adapter_version=adapter_version,
                connection=connection,
            )
            try:
                job.run_id = await self.platform.trigger_job_run(
                    workspace.project_id,
                    self.settings.training_job_name,
                    {
                        "POSTGRES_URI": connection.connection_string,
                        "USER_ID": user_id,
                        "MODEL_NAME": self.settings.training_base_model,
                        "ADAPTER_VERSION": adapter_version,
                        "OUTPUT_PATH": self.settings.training_output_path,
                    },
                )
            except Exception as exc:
                error = sanitize_error_message(exc)
                logger.warning("training_trigger_failed", user_id=user_id, job_id=run.job_id, error=error)
                self.store.update_workspace(
                    user_id, training_status=TrainingStatus.FAILED, training_error=error
                )
                await self.monitor.record_run(
                    job,
                    status=RunStatus.FAILED,
                    completed_at=datetime.utcnow(),
                    error_message=error,
                )
                return await self.status(user_id)

            self.store.update_workspace(user_id, training_run_id=job.run_id)
            await self.monitor.record_run(job, run_id=job.run_id)
            self.monitors.launch(MonitorKind.TRAINING, user_id, self.monitor.run(job))
            launched = True
            logger.info(
                "training_started",
                user_id=user_id,
                job_id=run.job_id,
                run_id=job.run_id,
                **counts.as_dict(),
            )
        finally:
            if not launched:
                await self.monitors.release(MonitorKind.TRAINING, user_id)
        return await self.status(user_id)

    async def status(self, user_id: str) -> Dict[str, Any]:
        workspace = self._get_workspace(user_id)
        counts = SampleCounts(
            good=workspace.good_count, bad=workspace.bad_count, mcl=workspace.mcl_count
        )
        min_total = self.settings.training_min_total_samples
        min_good = self.settings.training_min_primary_samples
        return {
            "status": workspace.training_status.value,
            "adapter_version": workspace.adapter_version,
            "job_id": workspace.training_job_id,
            "run_id": workspace.training_run_id,
            "last_trained_at": (
                workspace.last_trained_at.isoformat() if workspace.last_trained_at else None
            ),
            "error": workspace.training_error,
            "stats": {
                **counts.as_dict(),
                "total": counts.total,
                "required_total": min_total,
                "required_good": min_good,
                "ready_to_train": counts.total >= min_total and counts.good >= min_good,
            },
            "monitoring_active": await self.monitors.is_active(MonitorKind.TRAINING, user_id),
        }

    async def cancel(self, user_id: str) -> Dict[str, Any]:
        workspace = self._get_workspace(user_id)
        if workspace.training_status != TrainingStatus.TRAINING:
            raise ValidationError(
                "no training is running",
                detail={"status": workspace.training_status.value},
            )
        self.store.update_workspace(
            user_id,
            training_status=TrainingStatus.CANCELLED,
            training_error="cancelled by user",
        )
        logger.info("training_cancelled", user_id=user_id, job_id=workspace.training_job_id)
        job = TrainingJob(
            user_id=user_id,
            project_id=workspace.project_id or "",
            job_id=workspace.training_job_id or "",
            run_id=workspace.training_run_id or "",
            adapter_version=workspace.adapter_version or "",
        )
        if workspace.project_id and workspace.training_job_id:
            await self.monitor.record_run(
                job,
                status=RunStatus.CANCELLED,
                completed_at=datetime.utcnow(),
                error_message="cancelled by user",
            )
        if workspace.project_id and workspace.training_run_id:
            try:
                await self.platform.cancel_job_run(
                    workspace.project_id,
                    self.settings.training_job_name,
                    workspace.training_run_id,
                )
            except Exception as exc:
                logger.warning(
                    "training_platform_cancel_failed",
                    user_id=user_id,
                    error=sanitize_error_message(exc),
                )
        return await self.status(user_id)

    async def sync_counts(self, user_id: str) -> Dict[str, int]:
        """Refresh sample counters from the user's own database."""
        workspace = self._get_workspace(user_id)
        if not workspace.project_id:
            raise ValidationError(
                "workspace has no platform project", detail={"reason": "no_project"}
            )
        connection = await self.platform.resolve_postgres_connection(
            workspace.project_id,
            settle_seconds=self.settings.addon_resume_settle_seconds,
        )
        if connection is None:
            raise PlatformError("postgres connection unavailable")
        counts = await self.user_db.count_samples(connection, user_id)
        self.store.update_workspace(
            user_id,
            good_count=counts.good,
            bad_count=counts.bad,
            mcl_count=counts.mcl,
        )
        logger.info("training_counts_synced", user_id=user_id, **counts.as_dict())
        return {**counts.as_dict(), "total": counts.total}

    async def resume_inflight(self) -> int:
        resumed = 0
        for workspace in self.store.list_workspaces(training_status=TrainingStatus.TRAINING):
            if not (
                workspace.project_id
                and workspace.training_job_id
                and workspace.training_run_id
            ):
                continue
            if not await self.monitors.claim(
                MonitorKind.TRAINING, workspace.user_id, self.monitor.lease_seconds
            ):
                continue
            job = TrainingJob(
                user_id=workspace.user_id,
                project_id=workspace.project_id,
                job_id=workspace.training_job_id,
                run_id=workspace.training_run_id,
                adapter_version=workspace.adapter_version or "",
            )
            self.monitors.launch(MonitorKind.TRAINING, workspace.user_id, self.monitor.run(job))
            resumed += 1
        logger.info("training_monitors_resumed", count=resumed)
        return resumed
