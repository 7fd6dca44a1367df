"""Data models for rollback points, snapshots and executions."""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransition

_ID_ALPHABET = string.digits + string.ascii_lowercase

SAFETY_POINT_TYPE = "pre_rollback_backup"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_rollback_id() -> str:
    """Generate an id like ``rb-1718900000000-k3x9qa``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"rb-{int(time.time() * 1000)}-{suffix}"


class SnapshotKind(str, Enum):
    DATA_STORE = "data-store"
    CONFIGURATION = "configuration"
    APPLICATION_CODE = "application-code"


# Restore order: data before configuration before code.
ALL_KINDS: tuple[SnapshotKind, ...] = (
    SnapshotKind.DATA_STORE,
    SnapshotKind.CONFIGURATION,
    SnapshotKind.APPLICATION_CODE,
)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    EXECUTING = "executing"
    POST_VALIDATING = "post_validating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED})

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.VALIDATING, ExecutionStatus.FAILED}),
    ExecutionStatus.VALIDATING: frozenset({ExecutionStatus.EXECUTING, ExecutionStatus.FAILED}),
    ExecutionStatus.EXECUTING: frozenset(
        {ExecutionStatus.POST_VALIDATING, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.POST_VALIDATING: frozenset(
        {ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.SUCCEEDED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}


class StepPhase(str, Enum):
    PRE_VALIDATION = "pre-validation"
    EXECUTION = "execution"
    POST_VALIDATION = "post-validation"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class Snapshot(BaseModel):
    """One captured artifact. The locator is a path to the artifact file."""

    model_config = ConfigDict(frozen=True)

    kind: SnapshotKind
    locator: str
    created_at: datetime = Field(default_factory=utcnow)
    size: int = 0
    checksum: str = ""

    # configuration
    files: list[str] = Field(default_factory=list)

    # application-code
    revision: str | None = None
    branch: str | None = None
    release_version: str | None = None


class RollbackPoint(BaseModel):
    """A named, environment-scoped recovery target."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_rollback_id)
    environment: str
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = "system"
    release_version: str | None = None
    source_revision: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    snapshots: dict[SnapshotKind, Snapshot] = Field(default_factory=dict)

    def is_complete(self) -> bool:
        """True when exactly one snapshot of every kind is present."""
        if set(self.snapshots) != set(ALL_KINDS):
            return False
        return all(kind == snap.kind for kind, snap in self.snapshots.items())

    def missing_kinds(self) -> list[SnapshotKind]:
        return [kind for kind in ALL_KINDS if kind not in self.snapshots]

    @property
    def is_safety_point(self) -> bool:
        return self.metadata.get("type") == SAFETY_POINT_TYPE

    @property
    def description(self) -> str | None:
        value = self.metadata.get("description")
        return str(value) if value else None


class ExecutionStep(BaseModel):
    """Outcome of one validation check or execution step."""

    name: str
    phase: StepPhase
    status: StepStatus
    started_at: datetime
    completed_at: datetime
    error: str | None = None
    error_type: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCESS


class FailureCause(BaseModel):
    """Root cause of a failed execution."""

    error_type: str
    message: str
    phase: ExecutionStatus
    step: str | None = None


class AutoRestoreOutcome(BaseModel):
    """Result of restoring one safety snapshot kind after a failure."""

    kind: SnapshotKind
    success: bool
    started_at: datetime
    completed_at: datetime
    error: str | None = None


class RollbackExecution(BaseModel):
    """One attempt to revert an environment to a rollback point."""

    id: str = Field(default_factory=generate_rollback_id)
    rollback_point_id: str
    environment: str
    requested_by: str = "system"
    reason: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    steps: list[ExecutionStep] = Field(default_factory=list)
    safety_point_id: str | None = None
    error: FailureCause | None = None
    auto_restore_enabled: bool = True
    auto_restore: list[AutoRestoreOutcome] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def failed_step(self) -> ExecutionStep | None:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    def transition(self, status: ExecutionStatus) -> None:
        """Move to ``status``, enforcing the execution state machine."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Cannot move execution {self.id} from {self.status.value} to {status.value}"
            )
        self.status = status
        if status == ExecutionStatus.SUCCEEDED:
            self.completed_at = utcnow()
        elif status == ExecutionStatus.FAILED:
            self.failed_at = utcnow()

    def record_steps(self, steps: list[ExecutionStep]) -> None:
        self.steps.extend(steps)
