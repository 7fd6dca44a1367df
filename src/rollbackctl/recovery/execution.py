"""Execution engine: the ordered recovery steps of a rollback.

Each standard step depends on the previous one having succeeded, so the
pipeline is fail-fast and never retries on its own. Restore steps rewrite
whole state, which makes re-running the pipeline after operator
intervention safe.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from ..observability import EventSink
from .context import RollbackContext
from .errors import RestoreFailed
from .models import SnapshotKind, StepPhase
from .pipeline import (
    DEFAULT_STEP_TIMEOUT,
    CancellationToken,
    PipelineResult,
    PipelineStep,
    run_steps,
)

logger = logging.getLogger(__name__)

Action = Callable[[RollbackContext], Any]

# Steps are the pipeline's unit of work; the alias keeps call sites readable.
Step = PipelineStep


class StepRegistry:
    """Name -> action table for execution steps."""

    def __init__(self) -> None:
        self._steps: dict[str, Step] = {}

    def register(self, name: str, action: Action, timeout: float | None = None) -> Step:
        step = Step(name=name, run=action, timeout=timeout)
        self._steps[name] = step
        return step

    def get(self, name: str) -> Step:
        try:
            return self._steps[name]
        except KeyError:
            raise KeyError(f"Unknown step: {name}") from None

    def resolve(self, names: Iterable[str]) -> list[Step]:
        return [self.get(name) for name in names]

    def names(self) -> list[str]:
        return list(self._steps)


class ExecutionEngine:
    """Runs execution steps strictly in order and stops at the first failure."""

    def __init__(
        self,
        default_timeout: float = DEFAULT_STEP_TIMEOUT,
        events: EventSink | None = None,
    ):
        self.default_timeout = default_timeout
        self.events = events

    def run(
        self,
        steps: Sequence[Step],
        context: RollbackContext,
        cancel_token: CancellationToken | None = None,
    ) -> PipelineResult:
        return run_steps(
            steps,
            context,
            StepPhase.EXECUTION,
            default_timeout=self.default_timeout,
            events=self.events,
            cancel_token=cancel_token,
        )


# ---------------------------------------------------------------------------
# Standard steps
# ---------------------------------------------------------------------------


def stop_services(context: RollbackContext) -> None:
    context.run_hook("stop_services")


def _restore_kind(context: RollbackContext, kind: SnapshotKind) -> None:
    snapshot = context.target.snapshots.get(kind)
    if snapshot is None:
        raise RestoreFailed(f"Rollback point {context.target.id} has no {kind.value} snapshot")
    context.snapshots.restore(snapshot, context.environment)


def restore_data_store(context: RollbackContext) -> None:
    _restore_kind(context, SnapshotKind.DATA_STORE)


def restore_configuration(context: RollbackContext) -> None:
    _restore_kind(context, SnapshotKind.CONFIGURATION)


def restore_application_code(context: RollbackContext) -> None:
    _restore_kind(context, SnapshotKind.APPLICATION_CODE)


def repoint_release_channel(context: RollbackContext) -> None:
    context.run_hook("release_channel")


def resume_services(context: RollbackContext) -> None:
    context.run_hook("start_services")


STOP_SERVICES = "stop services"
RESTORE_DATA_STORE = "restore data-store snapshot"
RESTORE_CONFIGURATION = "restore configuration snapshot"
RESTORE_APPLICATION_CODE = "restore application-code snapshot"
REPOINT_RELEASE_CHANNEL = "re-point release channel"
RESUME_SERVICES = "resume services"

STANDARD_STEPS = (
    STOP_SERVICES,
    RESTORE_DATA_STORE,
    RESTORE_CONFIGURATION,
    RESTORE_APPLICATION_CODE,
    REPOINT_RELEASE_CHANNEL,
    RESUME_SERVICES,
)


def default_step_registry() -> StepRegistry:
    """Registry holding the standard execution steps."""
    registry = StepRegistry()
    registry.register(STOP_SERVICES, stop_services)
    registry.register(RESTORE_DATA_STORE, restore_data_store)
    registry.register(RESTORE_CONFIGURATION, restore_configuration)
    registry.register(RESTORE_APPLICATION_CODE, restore_application_code)
    registry.register(REPOINT_RELEASE_CHANNEL, repoint_release_channel)
    registry.register(RESUME_SERVICES, resume_services)
    return registry
