"""In-process stand-ins for the platform, workspace and user-database clients."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from sundaykit.service.connection_info import ConnectionInfo
from sundaykit.service.northflank import JobRunStatus, WorkspaceHost
from sundaykit.storage.models import SampleCounts


def _next(queue: List[Any]) -> Any:
    """Pop scripted responses in order; the last one repeats forever."""
    value = queue.pop(0) if len(queue) > 1 else queue[0]
    if isinstance(value, BaseException):
        raise value
    return value


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakePlatform:
    is_configured = True

    def __init__(self) -> None:
        self.projects: Dict[str, dict] = {}
        self.project_ids: List[Any] = [None]
        self.hosts: List[Any] = [None]
        self.host_gate: Optional[asyncio.Event] = None
        self.job_gate: Optional[asyncio.Event] = None
        self.connection: Optional[ConnectionInfo] = ConnectionInfo.from_parts(
            host="pg.internal",
            port=5432,
            database="sunday",
            user="sunday",
            password="pg-secret",
        )
        self.connection_error: Optional[Exception] = None
        self.template_error: Optional[Exception] = None
        self.create_project_error: Optional[Exception] = None
        self.job_trigger_error: Optional[Exception] = None
        self.job_runs: List[Any] = [JobRunStatus(run_id="jobrun-1", status="running")]
        self.logs = ""
        self.project_settings: Dict[str, dict] = {}
        self.services: Dict[str, List[dict]] = {}

        self.template_runs: List[dict] = []
        self.created_projects: List[str] = []
        self.settings_patches: List[tuple] = []
        self.env_patches: List[tuple] = []
        self.job_triggers: List[tuple] = []
        self.cancelled: List[tuple] = []

    async def get_project(self, project_id: str) -> Optional[dict]:
        return self.projects.get(project_id)

    async def create_project(self, name: str, *, description: str = "") -> dict:
        if self.create_project_error:
            raise self.create_project_error
        project = {"id": f"manual-{len(self.created_projects) + 1}", "name": name}
        self.projects[project["id"]] = project
        self.created_projects.append(project["id"])
        return project

    async def trigger_template_run(self, arguments: Dict[str, Any]) -> dict:
        self.template_runs.append(arguments)
        if self.template_error:
            raise self.template_error
        return {"id": f"run-{len(self.template_runs)}"}

    async def resolve_project_id(self, template_run_id: str) -> Optional[str]:
        return _next(self.project_ids)

    async def find_workspace_host(self, project_id: str) -> Optional[WorkspaceHost]:
        if self.host_gate is not None:
            await self.host_gate.wait()
        return _next(self.hosts)

    async def get_project_settings(self, project_id: str) -> Optional[dict]:
        return self.project_settings.get(project_id)

    async def patch_project_settings(self, project_id: str, settings: dict) -> None:
        self.settings_patches.append((project_id, settings))
        self.project_settings[project_id] = settings

    async def list_services(self, project_id: str) -> List[dict]:
        return self.services.get(project_id, [])

    async def patch_service_env(self, project_id: str, service_id: str, env: Dict[str, str]) -> None:
        self.env_patches.append((project_id, service_id, env))

    async def resolve_postgres_connection(
        self, project_id: str, *, settle_seconds: float = 30.0
    ) -> Optional[ConnectionInfo]:
        if self.connection_error:
            raise self.connection_error
        return self.connection

    async def trigger_job_run(self, project_id: str, job_name: str, environment: Dict[str, str]) -> str:
        self.job_triggers.append((project_id, job_name, environment))
        if self.job_trigger_error:
            raise self.job_trigger_error
        return "jobrun-1"

    async def get_job_run(self, project_id: str, job_name: str, run_id: str) -> Optional[JobRunStatus]:
        if self.job_gate is not None:
            await self.job_gate.wait()
        return _next(self.job_runs)

    async def get_job_run_logs(self, project_id: str, job_name: str, run_id: str, *, tail: int = 500) -> str:
        return self.logs

    async def cancel_job_run(self, project_id: str, job_name: str, run_id: str) -> None:
        self.cancelled.append((project_id, job_name, run_id))

    async def close(self) -> None:
        return None


class FakeWorkspaceApi:
    def __init__(self) -> None:
        self.healthy: List[Any] = [True]
        self.api_keys: List[Any] = ["n8n_minted_key"]
        self.credentials: List[Any] = ["cred-1"]
        self.credential_present: List[Any] = [True]
        self.api_key_calls: List[tuple] = []
        self.credential_calls: List[tuple] = []
        self.verify_calls: List[tuple] = []

    async def health(self, url: str) -> bool:
        return _next(self.healthy)

    async def create_api_key(self, url: str, email: str, password: str) -> str:
        self.api_key_calls.append((url, email, password))
        return _next(self.api_keys)

    async def create_postgres_credential(
        self,
        url: str,
        email: str,
        password: str,
        connection: ConnectionInfo,
        *,
        schema: str = "user_data_schema",
    ) -> str:
        self.credential_calls.append((url, email, password, connection.host, schema))
        return _next(self.credentials)

    async def verify_credential(self, url: str, email: str, password: str, credential_id: str) -> bool:
        self.verify_calls.append((url, credential_id))
        return _next(self.credential_present)

    async def close(self) -> None:
        return None


class FakeUserDatabase:
    def __init__(self) -> None:
        self.schema_calls = 0
        self.schema_error: Optional[Exception] = None
        self.counts = SampleCounts()
        self.approvals: List[tuple] = []
        self.runs: Dict[str, Dict[str, Any]] = {}

    async def initialize_schema(self, connection: ConnectionInfo) -> None:
        self.schema_calls += 1
        if self.schema_error:
            raise self.schema_error

    async def auto_approve(
        self, connection: ConnectionInfo, user_id: str, *, min_quality: float = 0.5
    ) -> SampleCounts:
        self.approvals.append((user_id, min_quality))
        return self.counts

    async def count_samples(self, connection: ConnectionInfo, user_id: str) -> SampleCounts:
        return self.counts

    async def log_training_run(self, connection: ConnectionInfo, run, *, job_name: str = "user-lora-training") -> None:
        self.runs[run.job_id] = {
            "user_id": run.user_id,
            "adapter_version": run.adapter_version,
            "status": run.status,
            "dataset": run.dataset_composition.as_dict(),
            "job_name": job_name,
        }

    async def update_training_run(self, connection: ConnectionInfo, job_id: str, **columns: Any) -> None:
        self.runs.setdefault(job_id, {}).update(
            {name: value for name, value in columns.items() if value is not None}
        )
