from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional


class ProjectStatus(str, Enum):
    """Provisioning lifecycle of a user workspace."""

    UNINITIATED = "uninitiated"
    INITIATED = "initiated"
    DEPLOYING = "deploying"
    READY = "ready"
    MANUAL = "manual"
    FAILED = "failed"
    TIMEOUT = "timeout"


# Allowed forward moves; writing the current status again is always a no-op.
# failed/timeout leave only through reset_workspace.
PROJECT_STATUS_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.UNINITIATED: frozenset(
        {ProjectStatus.INITIATED, ProjectStatus.MANUAL, ProjectStatus.FAILED}
    ),
    ProjectStatus.INITIATED: frozenset(
        {
            ProjectStatus.DEPLOYING,
            ProjectStatus.READY,
            ProjectStatus.MANUAL,
            ProjectStatus.FAILED,
            ProjectStatus.TIMEOUT,
        }
    ),
    ProjectStatus.MANUAL: frozenset(
        {
            ProjectStatus.DEPLOYING,
            ProjectStatus.READY,
            ProjectStatus.FAILED,
            ProjectStatus.TIMEOUT,
        }
    ),
    ProjectStatus.DEPLOYING: frozenset(
        {ProjectStatus.READY, ProjectStatus.FAILED, ProjectStatus.TIMEOUT}
    ),
    ProjectStatus.READY: frozenset({ProjectStatus.FAILED}),
    ProjectStatus.FAILED: frozenset(),
    ProjectStatus.TIMEOUT: frozenset(),
}

IN_PROGRESS_STATUSES = frozenset({ProjectStatus.INITIATED, ProjectStatus.DEPLOYING})
TERMINAL_STATUSES = frozenset({ProjectStatus.FAILED, ProjectStatus.TIMEOUT})


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    if current == target:
        return True
    return target in PROJECT_STATUS_TRANSITIONS[current]


class TrainingStatus(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Status of a single logged training run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MonitorKind(str, Enum):
    PROVISIONING = "provisioning"
    TRAINING = "training"


@dataclass
class UserWorkspace:
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    project_status: ProjectStatus = ProjectStatus.UNINITIATED
    template_run_id: Optional[str] = None
    workspace_url: Optional[str] = None
    encryption_key: Optional[str] = None
    api_key: Optional[str] = None
    secret_snapshot: Dict | None = None
    postgres_schema_initialized: bool = False
    n8n_credential_id: Optional[str] = None
    setup_error: Optional[str] = None
    postgres_setup_at: Optional[datetime] = None
    template_completed_at: Optional[datetime] = None
    training_status: TrainingStatus = TrainingStatus.IDLE
    training_error: Optional[str] = None
    adapter_version: Optional[str] = None
    training_job_id: Optional[str] = None
    training_run_id: Optional[str] = None
    last_trained_at: Optional[datetime] = None
    good_count: int = 0
    bad_count: int = 0
    mcl_count: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_ready(self) -> bool:
        return self.project_status == ProjectStatus.READY and bool(self.workspace_url)

    @property
    def database_ready(self) -> bool:
        return self.postgres_schema_initialized and bool(self.n8n_credential_id)

    @property
    def sample_total(self) -> int:
        return self.good_count + self.bad_count + self.mcl_count


# Columns callers may write through update_workspace
WORKSPACE_MUTABLE_FIELDS = frozenset(
    name
    for name in UserWorkspace.__dataclass_fields__
    if name not in {"user_id", "created_at", "updated_at"}
)

SECRET_FIELDS = ("encryption_key", "api_key")


@dataclass
class SampleCounts:
    good: int = 0
    bad: int = 0
    mcl: int = 0

    @property
    def total(self) -> int:
        return self.good + self.bad + self.mcl

    def as_dict(self) -> Dict[str, int]:
        return {"good": self.good, "bad": self.bad, "mcl": self.mcl}


@dataclass
class TrainingRun:
    job_id: str
    user_id: str
    adapter_version: str
    status: RunStatus = RunStatus.RUNNING
    dataset_composition: SampleCounts = field(default_factory=SampleCounts)
    run_id: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict | None = None

    @property
    def total_samples(self) -> int:
        return self.dataset_composition.total


@dataclass
class MonitorClaim:
    kind: str
    user_id: str
    owner: str
    claimed_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, kind: str, user_id: str, owner: str, ttl_seconds: float) -> "MonitorClaim":
        now = datetime.utcnow()
        return cls(
            kind=kind,
            user_id=user_id,
            owner=owner,
            claimed_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at
