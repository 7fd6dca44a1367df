"""Deployment rollback orchestration.

This module provides:
- Snapshot capture/restore for data-store, configuration and application code
- A durable catalog of rollback points and executions with retention
- Fail-fast validation and execution pipelines
- The recovery controller with safety-snapshot auto-restore
"""

from .context import EnvironmentHooks, RollbackContext
from .controller import RecoveryController, RollbackOptions
from .errors import (
    CaptureFailed,
    EnvironmentMismatch,
    ExecutionAbandoned,
    ExecutionCancelled,
    ExecutionInProgress,
    ExternalCollaboratorError,
    InvalidTransition,
    NotFound,
    RestoreFailed,
    RollbackError,
    Timeout,
    ValidationFailed,
)
from .execution import (
    STANDARD_STEPS,
    ExecutionEngine,
    Step,
    StepRegistry,
    default_step_registry,
)
from .models import (
    ALL_KINDS,
    AutoRestoreOutcome,
    ExecutionStatus,
    ExecutionStep,
    FailureCause,
    RollbackExecution,
    RollbackPoint,
    Snapshot,
    SnapshotKind,
    StepPhase,
    StepStatus,
)
from .pipeline import CancellationToken, PipelineResult, PipelineStep, run_steps
from .snapshots import SnapshotManager
from .store import RecordListing, RollbackPointStore
from .validation import (
    STANDARD_POST_CHECKS,
    STANDARD_PRE_CHECKS,
    Check,
    CheckRegistry,
    CheckResult,
    ValidationEngine,
    default_check_registry,
)

__all__ = [
    # Models
    "ALL_KINDS",
    "AutoRestoreOutcome",
    "ExecutionStatus",
    "ExecutionStep",
    "FailureCause",
    "RollbackExecution",
    "RollbackPoint",
    "Snapshot",
    "SnapshotKind",
    "StepPhase",
    "StepStatus",
    # Errors
    "RollbackError",
    "NotFound",
    "EnvironmentMismatch",
    "ExecutionInProgress",
    "CaptureFailed",
    "RestoreFailed",
    "ValidationFailed",
    "Timeout",
    "ExternalCollaboratorError",
    "ExecutionAbandoned",
    "ExecutionCancelled",
    "InvalidTransition",
    # Snapshots & store
    "SnapshotManager",
    "RollbackPointStore",
    "RecordListing",
    # Pipelines
    "CancellationToken",
    "PipelineResult",
    "PipelineStep",
    "run_steps",
    "Check",
    "CheckRegistry",
    "CheckResult",
    "ValidationEngine",
    "default_check_registry",
    "STANDARD_PRE_CHECKS",
    "STANDARD_POST_CHECKS",
    "Step",
    "StepRegistry",
    "ExecutionEngine",
    "default_step_registry",
    "STANDARD_STEPS",
    # Controller
    "EnvironmentHooks",
    "RollbackContext",
    "RecoveryController",
    "RollbackOptions",
]
