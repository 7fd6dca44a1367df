"""Generic fail-fast runner for ordered, data-described steps.

Both the validation engine and the execution engine hand a list of named
steps to ``run_steps``. Steps run one at a time in declared order; the
first failure stops the pipeline and the outcomes of exactly the steps
that ran are returned.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..collaborators.shell import command_deadline
from ..observability import EventSink, EventType, emit_safely
from .errors import ExecutionCancelled, Timeout, describe_error, error_type_of
from .models import ExecutionStep, StepPhase, StepStatus, utcnow

if TYPE_CHECKING:
    from .context import RollbackContext

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 600.0


class CancellationToken:
    """Cooperative cancellation, honored between steps only."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class PipelineStep:
    """A named unit of work bound to its callable at registration time."""

    name: str
    run: Callable[[RollbackContext], Any]
    timeout: float | None = None


@dataclass
class PipelineResult:
    """Outcomes of the steps that ran, plus the error that stopped the run."""

    steps: list[ExecutionStep] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def failed_step(self) -> ExecutionStep | None:
        if self.steps and self.steps[-1].status == StepStatus.FAILED:
            return self.steps[-1]
        return None


def _run_before_deadline(step: PipelineStep, context: RollbackContext, deadline: float) -> Any:
    with command_deadline(deadline):
        return step.run(context)


def _call_with_timeout(
    step: PipelineStep, context: RollbackContext, timeout: float
) -> Any:
    """Run one step under its time budget.

    Commands the step starts are killed at the deadline. A step that overruns
    is still joined before ``Timeout`` is raised, so nothing it does can land
    after the caller has moved on (to auto-restore, for instance).
    """
    deadline = time.monotonic() + timeout
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"step-{step.name}")
    try:
        future = pool.submit(_run_before_deadline, step, context, deadline)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            pass
        logger.warning("%s exceeded %gs; waiting for it to stop", step.name, timeout)
        wait([future])
        raise Timeout(step.name, timeout) from None
    finally:
        pool.shutdown(wait=False)


def run_steps(
    steps: Sequence[PipelineStep],
    context: RollbackContext,
    phase: StepPhase,
    default_timeout: float = DEFAULT_STEP_TIMEOUT,
    interpret: Callable[[PipelineStep, Any], None] | None = None,
    events: EventSink | None = None,
    cancel_token: CancellationToken | None = None,
) -> PipelineResult:
    """Run steps in order, stopping at the first failure.

    Args:
        steps: Ordered steps to run.
        context: Passed to every step.
        phase: Phase recorded on each step outcome.
        default_timeout: Per-step time budget unless the step sets its own.
        interpret: Called with each step's return value; raising marks the step failed.
        events: Sink for step events.
        cancel_token: Checked before every step.

    Returns:
        PipelineResult whose steps are a prefix of ``steps``.
    """
    result = PipelineResult()
    execution_id = context.execution.id if context.execution else None

    for step in steps:
        if cancel_token is not None and cancel_token.cancelled:
            result.error = ExecutionCancelled(
                f"Cancelled before '{step.name}': {cancel_token.reason}"
            )
            logger.warning("%s pipeline cancelled before %s", phase.value, step.name)
            break

        started_at = utcnow()
        emit_safely(
            events,
            EventType.STEP_STARTED,
            context.environment,
            execution_id,
            step=step.name,
            phase=phase.value,
        )

        try:
            value = _call_with_timeout(step, context, step.timeout or default_timeout)
            if interpret is not None:
                interpret(step, value)
        except Exception as e:
            outcome = ExecutionStep(
                name=step.name,
                phase=phase,
                status=StepStatus.FAILED,
                started_at=started_at,
                completed_at=utcnow(),
                error=describe_error(e),
                error_type=error_type_of(e),
            )
            result.steps.append(outcome)
            result.error = e
            logger.error("✗ %s failed: %s", step.name, outcome.error)
            emit_safely(
                events,
                EventType.STEP_FAILED,
                context.environment,
                execution_id,
                step=step.name,
                phase=phase.value,
                error=outcome.error,
                error_type=outcome.error_type,
                duration_seconds=outcome.duration_seconds,
            )
            break

        outcome = ExecutionStep(
            name=step.name,
            phase=phase,
            status=StepStatus.SUCCESS,
            started_at=started_at,
            completed_at=utcnow(),
        )
        result.steps.append(outcome)
        logger.info("✓ %s", step.name)
        emit_safely(
            events,
            EventType.STEP_SUCCEEDED,
            context.environment,
            execution_id,
            step=step.name,
            phase=phase.value,
            duration_seconds=outcome.duration_seconds,
        )

    return result
