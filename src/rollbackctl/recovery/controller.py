"""Recovery controller: drives a rollback from request to terminal state.

Phases of ``request_rollback``:

1. Load the target point; reject unknown points and environment mismatches.
2. Persist a new ``pending`` execution (rejected if one is in flight).
3. ``validating``: pre-checks. A failure ends the run; nothing was touched.
4. Capture a safety point of the current state. A failure ends the run.
5. ``executing``: the recovery steps against the target point.
6. On a failure in 5 or 7, restore the safety point (best effort) when
   auto-restore is on, keeping the original failure as the root cause.
7. ``post_validating``: post-checks, then ``succeeded``.
8. Persist the final record with every step outcome.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from ..observability import EventSink, EventType, LoggingEventSink, emit_safely
from .context import EnvironmentHooks, RollbackContext
from .errors import (
    EnvironmentMismatch,
    ExecutionAbandoned,
    ExecutionInProgress,
    InvalidTransition,
    NotFound,
    RollbackError,
    describe_error,
    error_type_of,
)
from .execution import STANDARD_STEPS, ExecutionEngine, Step, default_step_registry
from .models import (
    ALL_KINDS,
    SAFETY_POINT_TYPE,
    AutoRestoreOutcome,
    ExecutionStatus,
    FailureCause,
    RollbackExecution,
    RollbackPoint,
    SnapshotKind,
    StepPhase,
    utcnow,
)
from .pipeline import CancellationToken, PipelineResult
from .snapshots import SnapshotManager
from .store import RecordListing, RollbackPointStore
from .validation import (
    STANDARD_POST_CHECKS,
    STANDARD_PRE_CHECKS,
    Check,
    ValidationEngine,
    default_check_registry,
)

logger = logging.getLogger(__name__)

SAFETY_CAPTURE_STEP = "capture safety snapshot"


@dataclass
class RollbackOptions:
    """Per-request options.

    Attributes:
        auto_restore: Restore the safety point when the rollback fails.
            ``None`` uses the controller default.
        requested_by: Who asked for the rollback.
        reason: Free-text reason recorded on the execution.
        cancel_token: Checked between steps.
    """

    auto_restore: bool | None = None
    requested_by: str = "system"
    reason: str | None = None
    cancel_token: CancellationToken | None = None


class RecoveryController:
    """Coordinates validation, safety capture, execution and auto-restore.

    The store, snapshot manager and hooks are injected; whoever assembles
    the controller owns their lifecycle.
    """

    def __init__(
        self,
        store: RollbackPointStore,
        snapshots: SnapshotManager,
        hooks: EnvironmentHooks,
        validation: ValidationEngine | None = None,
        execution: ExecutionEngine | None = None,
        pre_checks: Sequence[Check] | None = None,
        post_checks: Sequence[Check] | None = None,
        steps: Sequence[Step] | None = None,
        events: EventSink | None = None,
        auto_restore: bool = True,
    ):
        self.store = store
        self.snapshots = snapshots
        self.hooks = hooks
        self.events = events if events is not None else LoggingEventSink()
        self.validation = validation or ValidationEngine(events=self.events)
        self.execution = execution or ExecutionEngine(events=self.events)

        checks = default_check_registry()
        if pre_checks is None:
            pre_checks = checks.resolve(STANDARD_PRE_CHECKS)
        if post_checks is None:
            post_checks = checks.resolve(STANDARD_POST_CHECKS)
        if steps is None:
            steps = default_step_registry().resolve(STANDARD_STEPS)
        self.pre_checks = list(pre_checks)
        self.post_checks = list(post_checks)
        self.steps = list(steps)
        self.auto_restore = auto_restore

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Rollback points
    # ------------------------------------------------------------------

    def create_rollback_point(
        self,
        environment: str,
        created_by: str = "system",
        metadata: dict[str, Any] | None = None,
        protect: Iterable[str] = (),
    ) -> RollbackPoint:
        """Capture all snapshot kinds and store them as a new rollback point.

        Raises:
            CaptureFailed: If any snapshot kind could not be captured.
        """
        logger.info("Creating rollback point for %s", environment)
        snapshots = self.snapshots.capture_all(environment)
        code = snapshots[SnapshotKind.APPLICATION_CODE]

        point = RollbackPoint(
            environment=environment,
            created_by=created_by,
            release_version=code.release_version,
            source_revision=code.revision,
            metadata=dict(metadata or {}),
            snapshots=snapshots,
        )

        protected = set(protect)
        active = self.store.active_execution(environment)
        if active is not None:
            protected.add(active.rollback_point_id)
            if active.safety_point_id:
                protected.add(active.safety_point_id)

        try:
            evicted = self.store.save_point(point, protect=protected)
        except Exception:
            for snapshot in snapshots.values():
                self.snapshots.discard(snapshot)
            raise

        for old in evicted:
            for snapshot in old.snapshots.values():
                self.snapshots.discard(snapshot)

        emit_safely(
            self.events,
            EventType.POINT_CREATED,
            environment,
            point_id=point.id,
            release_version=point.release_version,
            source_revision=point.source_revision,
            evicted=[old.id for old in evicted],
        )
        logger.info("✓ Rollback point %s created", point.id)
        return point

    def select_target(self, environment: str) -> RollbackPoint:
        """Newest complete rollback point that is not a safety snapshot.

        Raises:
            NotFound: If the environment has no usable point.
        """
        for point in self.store.list_points(environment):
            if point.is_complete() and not point.is_safety_point:
                return point
        raise NotFound("Usable rollback point for environment", environment)

    def list_points(self, environment: str | None = None) -> RecordListing[RollbackPoint]:
        return self.store.list_points(environment)

    def list_executions(
        self, environment: str | None = None
    ) -> RecordListing[RollbackExecution]:
        return self.store.list_executions(environment)

    def get_execution(self, execution_id: str) -> RollbackExecution:
        return self.store.get_execution(execution_id)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _environment_lock(self, environment: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(environment, threading.Lock())

    def request_rollback(
        self,
        environment: str,
        point_id: str,
        options: RollbackOptions | None = None,
    ) -> RollbackExecution:
        """Revert an environment to a rollback point.

        Returns:
            The terminal execution record (``succeeded`` or ``failed``).

        Raises:
            NotFound: The point does not exist.
            EnvironmentMismatch: The point belongs to another environment.
            ExecutionInProgress: The environment already has a rollback in flight.
        """
        options = options or RollbackOptions()
        target = self.store.get_point(point_id)
        if target.environment != environment:
            raise EnvironmentMismatch(environment, target.environment)

        lock = self._environment_lock(environment)
        if not lock.acquire(blocking=False):
            raise ExecutionInProgress(environment)

        try:
            auto_restore = options.auto_restore
            if auto_restore is None:
                auto_restore = self.auto_restore
            execution = RollbackExecution(
                rollback_point_id=target.id,
                environment=environment,
                requested_by=options.requested_by,
                reason=options.reason,
                auto_restore_enabled=auto_restore,
            )
            self.store.begin_execution(execution)
            logger.info("Executing rollback %s to %s in %s", execution.id, target.id, environment)
            emit_safely(
                self.events,
                EventType.EXECUTION_STARTED,
                environment,
                execution.id,
                rollback_point_id=target.id,
                requested_by=options.requested_by,
                auto_restore=auto_restore,
            )

            try:
                self._drive(execution, target, options.cancel_token)
            except Exception as e:
                logger.exception("Rollback %s aborted unexpectedly", execution.id)
                self._handle_unexpected(execution, e)

            self.store.save_execution(execution)
            self._log_outcome(execution)
            emit_safely(
                self.events,
                EventType.EXECUTION_FINISHED,
                environment,
                execution.id,
                status=execution.status.value,
                error=execution.error.model_dump(mode="json") if execution.error else None,
            )
            return execution
        finally:
            lock.release()

    def abandon_execution(
        self, execution_id: str, reason: str | None = None
    ) -> RollbackExecution:
        """Mark an in-flight execution failed after its owning process died.

        Nothing is restored: the environment is left as the dead process
        left it, and the safety point (if one was captured) stays available
        for a manual rollback.

        Raises:
            NotFound: The execution does not exist.
            InvalidTransition: The execution already finished.
            ExecutionInProgress: This controller is still running it.
        """
        execution = self.store.get_execution(execution_id)
        if execution.is_terminal:
            raise InvalidTransition(
                f"Execution {execution_id} already finished ({execution.status.value})"
            )

        lock = self._environment_lock(execution.environment)
        if not lock.acquire(blocking=False):
            raise ExecutionInProgress(execution.environment, execution_id)

        try:
            cause = ExecutionAbandoned(
                reason or "abandoned by operator; owning process no longer running"
            )
            self._set_cause(execution, cause, None)
            self._fail(execution)
            logger.warning(
                "Abandoned rollback %s in %s%s",
                execution_id,
                execution.environment,
                f"; pre-rollback state kept in {execution.safety_point_id}"
                if execution.safety_point_id
                else "",
            )
            emit_safely(
                self.events,
                EventType.EXECUTION_FINISHED,
                execution.environment,
                execution.id,
                status=execution.status.value,
                error=execution.error.model_dump(mode="json") if execution.error else None,
            )
            return execution
        finally:
            lock.release()

    def _drive(
        self,
        execution: RollbackExecution,
        target: RollbackPoint,
        cancel_token: CancellationToken | None,
    ) -> None:
        context = RollbackContext(
            environment=execution.environment,
            target=target,
            snapshots=self.snapshots,
            hooks=self.hooks,
            execution=execution,
        )

        self._transition(execution, ExecutionStatus.VALIDATING)
        pre = self.validation.run_checks(
            self.pre_checks, context, StepPhase.PRE_VALIDATION, cancel_token
        )
        self._record(execution, pre)
        if not pre.success:
            self._fail(execution, pre)
            return

        try:
            safety = self.create_rollback_point(
                execution.environment,
                created_by="rollback_system",
                metadata={"type": SAFETY_POINT_TYPE, "rollback_execution_id": execution.id},
                protect={target.id},
            )
        except RollbackError as e:
            # Fail closed: nothing destructive has run yet.
            self._set_cause(execution, e, SAFETY_CAPTURE_STEP)
            self._fail(execution)
            return

        execution.safety_point_id = safety.id
        self.store.save_execution(execution)

        self._transition(execution, ExecutionStatus.EXECUTING)
        run = self.execution.run(self.steps, context, cancel_token)
        self._record(execution, run)
        if not run.success:
            self._recover(execution, safety, run)
            return

        self._transition(execution, ExecutionStatus.POST_VALIDATING)
        post = self.validation.run_checks(
            self.post_checks, context, StepPhase.POST_VALIDATION, cancel_token
        )
        self._record(execution, post)
        if not post.success:
            self._recover(execution, safety, post)
            return

        self._transition(execution, ExecutionStatus.SUCCEEDED)

    def _transition(self, execution: RollbackExecution, status: ExecutionStatus) -> None:
        previous = execution.status
        execution.transition(status)
        self.store.save_execution(execution)
        emit_safely(
            self.events,
            EventType.STATUS_CHANGED,
            execution.environment,
            execution.id,
            previous=previous.value,
            status=status.value,
        )

    def _record(self, execution: RollbackExecution, result: PipelineResult) -> None:
        execution.record_steps(result.steps)
        self.store.save_execution(execution)

    def _set_cause(
        self, execution: RollbackExecution, error: BaseException, step: str | None
    ) -> None:
        if execution.error is None:
            execution.error = FailureCause(
                error_type=error_type_of(error),
                message=describe_error(error),
                phase=execution.status,
                step=step,
            )

    def _fail(self, execution: RollbackExecution, result: PipelineResult | None = None) -> None:
        if result is not None and result.error is not None:
            failed = result.failed_step
            self._set_cause(execution, result.error, failed.name if failed else None)
        previous = execution.status
        execution.transition(ExecutionStatus.FAILED)
        self.store.save_execution(execution)
        emit_safely(
            self.events,
            EventType.STATUS_CHANGED,
            execution.environment,
            execution.id,
            previous=previous.value,
            status=ExecutionStatus.FAILED.value,
        )

    def _recover(
        self,
        execution: RollbackExecution,
        safety: RollbackPoint,
        result: PipelineResult,
    ) -> None:
        """Record the root cause, auto-restore if enabled, then fail."""
        if result.error is not None:
            failed = result.failed_step
            self._set_cause(execution, result.error, failed.name if failed else None)

        if execution.auto_restore_enabled:
            self._auto_restore(execution, safety)
        else:
            logger.warning(
                "Auto-restore disabled; %s left as-is for manual inspection",
                execution.environment,
            )
        self._fail(execution)

    def _auto_restore(self, execution: RollbackExecution, safety: RollbackPoint) -> None:
        """Restore every kind of the safety point. Failures are recorded, not raised."""
        logger.warning("Restoring pre-rollback state from %s", safety.id)
        emit_safely(
            self.events,
            EventType.AUTO_RESTORE_STARTED,
            execution.environment,
            execution.id,
            safety_point_id=safety.id,
        )

        for kind in ALL_KINDS:
            started_at = utcnow()
            snapshot = safety.snapshots.get(kind)
            error: str | None = None
            try:
                if snapshot is None:
                    raise NotFound(f"{kind.value} snapshot of safety point", safety.id)
                self.snapshots.restore(snapshot, execution.environment)
            except Exception as e:
                error = describe_error(e)
                logger.error("Auto-restore of %s failed: %s", kind.value, error)

            outcome = AutoRestoreOutcome(
                kind=kind,
                success=error is None,
                started_at=started_at,
                completed_at=utcnow(),
                error=error,
            )
            execution.auto_restore.append(outcome)
            emit_safely(
                self.events,
                EventType.AUTO_RESTORE_STEP,
                execution.environment,
                execution.id,
                kind=kind.value,
                success=outcome.success,
                error=error,
            )

        self.store.save_execution(execution)

    def _handle_unexpected(self, execution: RollbackExecution, error: Exception) -> None:
        if execution.is_terminal:
            return

        self._set_cause(execution, error, None)
        mutated = execution.status in (
            ExecutionStatus.EXECUTING,
            ExecutionStatus.POST_VALIDATING,
        )
        if mutated and execution.safety_point_id and execution.auto_restore_enabled:
            try:
                safety = self.store.get_point(execution.safety_point_id)
            except NotFound:
                logger.error(
                    "Safety point %s vanished; cannot auto-restore", execution.safety_point_id
                )
            else:
                self._auto_restore(execution, safety)
        execution.transition(ExecutionStatus.FAILED)

    def _log_outcome(self, execution: RollbackExecution) -> None:
        if execution.status == ExecutionStatus.SUCCEEDED:
            logger.info("✓ Rollback %s completed successfully", execution.id)
            return
        cause = execution.error
        logger.error(
            "✗ Rollback %s failed in %s at %s: %s",
            execution.id,
            cause.phase.value if cause else "unknown phase",
            (cause.step if cause else None) or "n/a",
            cause.message if cause else "unknown error",
        )
