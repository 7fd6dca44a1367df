"""Validation engine: named pre- and post-condition checks.

Checks are registered as name -> predicate pairs and run in declared order,
stopping at the first failure. A predicate passes by returning ``True``,
``None``, a passing ``CheckResult`` or a successful ``CommandResult``; it
fails by returning ``False``, a failing result, or raising.
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..collaborators.shell import CommandResult
from ..observability import EventSink
from .context import RollbackContext
from .errors import ExecutionCancelled, Timeout, ValidationFailed
from .models import SnapshotKind, StepPhase
from .pipeline import (
    DEFAULT_STEP_TIMEOUT,
    CancellationToken,
    PipelineResult,
    PipelineStep,
    run_steps,
)
from .snapshots import CapturedFile

logger = logging.getLogger(__name__)

Predicate = Callable[[RollbackContext], Any]


@dataclass
class CheckResult:
    """Outcome of a predicate, with a reason when it fails."""

    passed: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> CheckResult:
        return cls(passed=True)

    @classmethod
    def fail(cls, reason: str) -> CheckResult:
        return cls(passed=False, reason=reason)


@dataclass
class Check:
    """A named predicate."""

    name: str
    predicate: Predicate
    timeout: float | None = None

    def as_step(self) -> PipelineStep:
        return PipelineStep(name=self.name, run=self.predicate, timeout=self.timeout)


class CheckRegistry:
    """Name -> predicate table. New checks are added here, never in the engine."""

    def __init__(self) -> None:
        self._checks: dict[str, Check] = {}

    def register(self, name: str, predicate: Predicate, timeout: float | None = None) -> Check:
        check = Check(name=name, predicate=predicate, timeout=timeout)
        self._checks[name] = check
        return check

    def get(self, name: str) -> Check:
        try:
            return self._checks[name]
        except KeyError:
            raise KeyError(f"Unknown check: {name}") from None

    def resolve(self, names: Iterable[str]) -> list[Check]:
        return [self.get(name) for name in names]

    def names(self) -> list[str]:
        return list(self._checks)

    def __contains__(self, name: object) -> bool:
        return name in self._checks


def _interpret(step: PipelineStep, value: Any) -> None:
    if value is None or value is True:
        return
    if value is False:
        raise ValidationFailed(step.name, "check returned false")
    if isinstance(value, CheckResult):
        if not value.passed:
            raise ValidationFailed(step.name, value.reason or "check failed")
        return
    if isinstance(value, CommandResult):
        if not value.success:
            raise ValidationFailed(step.name, value.summary())
        return
    if not value:
        raise ValidationFailed(step.name, f"check returned {value!r}")


class ValidationEngine:
    """Runs checks strictly in order and stops at the first failure."""

    def __init__(
        self,
        default_timeout: float = DEFAULT_STEP_TIMEOUT,
        events: EventSink | None = None,
    ):
        self.default_timeout = default_timeout
        self.events = events

    def run_checks(
        self,
        checks: Sequence[Check],
        context: RollbackContext,
        phase: StepPhase = StepPhase.PRE_VALIDATION,
        cancel_token: CancellationToken | None = None,
    ) -> PipelineResult:
        """Run checks and return the outcomes of those that ran.

        A failing check is reported as ``ValidationFailed`` (or ``Timeout``)
        on the returned result rather than raised.
        """
        result = run_steps(
            [check.as_step() for check in checks],
            context,
            phase,
            default_timeout=self.default_timeout,
            interpret=_interpret,
            events=self.events,
            cancel_token=cancel_token,
        )
        error = result.error
        if error is not None and not isinstance(
            error, (ValidationFailed, Timeout, ExecutionCancelled)
        ):
            failed = result.failed_step
            if failed is not None:
                wrapped = ValidationFailed(failed.name, failed.error or "check raised")
                wrapped.__cause__ = error
                result.error = wrapped
        return result


# ---------------------------------------------------------------------------
# Standard checks
# ---------------------------------------------------------------------------


def check_environment_reachable(context: RollbackContext) -> Any:
    return context.run_hook("environment_status")


def check_point_integrity(context: RollbackContext) -> CheckResult:
    point = context.target
    missing = point.missing_kinds()
    if missing or not point.is_complete():
        kinds = ", ".join(kind.value for kind in missing) or "unknown"
        return CheckResult.fail(f"Rollback point {point.id} is incomplete (missing {kinds})")

    for kind, snapshot in point.snapshots.items():
        if not context.snapshots.validate(snapshot):
            return CheckResult.fail(
                f"Snapshot missing or corrupt: {kind.value} at {snapshot.locator}"
            )
    return CheckResult.ok()


def check_data_store_reachable(context: RollbackContext) -> Any:
    return context.run_hook("data_ping")


def check_artifact_storage(context: RollbackContext) -> CheckResult:
    artifacts_dir = context.snapshots.artifacts_dir
    try:
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=artifacts_dir, prefix=".write-check-"):
            pass
    except OSError as e:
        return CheckResult.fail(f"Artifact storage not writable: {artifacts_dir} ({e})")
    return CheckResult.ok()


def check_liveness(context: RollbackContext) -> Any:
    return context.run_hook("health_check")


def check_data_store_consistency(context: RollbackContext) -> Any:
    return context.run_hook("data_integrity")


def check_configuration_matches(context: RollbackContext) -> CheckResult:
    snapshot = context.target.snapshots.get(SnapshotKind.CONFIGURATION)
    if snapshot is None:
        return CheckResult.fail("Target has no configuration snapshot")

    expected = context.snapshots.read_configuration(snapshot)
    root: Path = context.snapshots.project_root
    for name in snapshot.files:
        try:
            actual = CapturedFile.read(root / name)
        except OSError as e:
            return CheckResult.fail(f"{name} unreadable after restore ({e})")
        wanted = expected.get(name)
        if wanted is None or actual.content != wanted.content:
            return CheckResult.fail(f"{name} differs from the restored snapshot")
        if actual.mode != wanted.mode:
            return CheckResult.fail(
                f"{name} has mode {actual.mode:o}, snapshot recorded {wanted.mode:o}"
            )
    return CheckResult.ok()


def check_smoke_test(context: RollbackContext) -> Any:
    return context.run_hook("smoke_test")


ENVIRONMENT_REACHABLE = "environment reachable"
POINT_INTEGRITY = "rollback point integrity"
DATA_STORE_REACHABLE = "data-store reachable"
ARTIFACT_STORAGE_REACHABLE = "artifact storage reachable"
LIVENESS_PROBE = "liveness probe"
DATA_STORE_CONSISTENCY = "data-store consistency"
CONFIGURATION_MATCHES = "configuration matches snapshot"
SMOKE_TEST = "smoke test"

STANDARD_PRE_CHECKS = (
    ENVIRONMENT_REACHABLE,
    POINT_INTEGRITY,
    DATA_STORE_REACHABLE,
    ARTIFACT_STORAGE_REACHABLE,
)

STANDARD_POST_CHECKS = (
    LIVENESS_PROBE,
    DATA_STORE_CONSISTENCY,
    CONFIGURATION_MATCHES,
    SMOKE_TEST,
)


def default_check_registry() -> CheckRegistry:
    """Registry holding the standard pre- and post-checks."""
    registry = CheckRegistry()
    registry.register(ENVIRONMENT_REACHABLE, check_environment_reachable)
    registry.register(POINT_INTEGRITY, check_point_integrity)
    registry.register(DATA_STORE_REACHABLE, check_data_store_reachable)
    registry.register(ARTIFACT_STORAGE_REACHABLE, check_artifact_storage)
    registry.register(LIVENESS_PROBE, check_liveness)
    registry.register(DATA_STORE_CONSISTENCY, check_data_store_consistency)
    registry.register(CONFIGURATION_MATCHES, check_configuration_matches)
    registry.register(SMOKE_TEST, check_smoke_test)
    return registry
