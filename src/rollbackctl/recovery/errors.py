"""Error taxonomy for rollback orchestration.

Every failure the orchestrator can report derives from RollbackError.
The class name doubles as the error type recorded on a failed
RollbackExecution, so renaming a class changes persisted records.
"""

from __future__ import annotations


class RollbackError(Exception):
    """Base class for all rollback orchestration errors."""

    @property
    def error_type(self) -> str:
        return type(self).__name__


class NotFound(RollbackError):
    """A referenced rollback point or execution does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class EnvironmentMismatch(RollbackError):
    """The rollback point belongs to a different environment."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Rollback point environment mismatch: expected {expected}, got {actual}"
        )


class ExecutionInProgress(RollbackError):
    """Another rollback is still running for the environment."""

    def __init__(self, environment: str, execution_id: str | None = None):
        self.environment = environment
        self.execution_id = execution_id
        detail = f" ({execution_id})" if execution_id else ""
        super().__init__(f"A rollback is already in progress for {environment}{detail}")


class CaptureFailed(RollbackError):
    """A snapshot could not be captured."""


class RestoreFailed(RollbackError):
    """A snapshot could not be fully restored."""


class ValidationFailed(RollbackError):
    """A named validation check did not pass."""

    def __init__(self, check_name: str, reason: str):
        self.check_name = check_name
        self.reason = reason
        super().__init__(f"{check_name}: {reason}")


class Timeout(RollbackError):
    """A step or external call exceeded its time budget."""

    def __init__(self, operation: str, seconds: float):
        self.operation = operation
        self.seconds = seconds
        super().__init__(f"{operation} timed out after {seconds:g}s")


class ExternalCollaboratorError(RollbackError):
    """The data platform, version control or a shell command failed."""


class ExecutionCancelled(RollbackError):
    """Cancellation was requested between steps."""


class ExecutionAbandoned(RollbackError):
    """An operator closed an execution whose owning process is gone."""


class InvalidTransition(RollbackError):
    """An execution status change that the state machine does not allow."""


def describe_error(exc: BaseException) -> str:
    """Render an exception with its chained causes on one line.

    Causes without a message add nothing and are skipped.
    """
    parts = [str(exc) or type(exc).__name__]
    cause = exc.__cause__
    while cause is not None:
        text = str(cause)
        if text and text not in parts[-1]:
            parts.append(text)
        cause = cause.__cause__
    return ": ".join(parts)


def error_type_of(exc: BaseException) -> str:
    """Taxonomy name for an exception; foreign exceptions keep their class name."""
    if isinstance(exc, RollbackError):
        return exc.error_type
    return type(exc).__name__
