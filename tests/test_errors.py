"""Tests for the error taxonomy and CLI error handling utilities."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from rollbackctl.recovery.errors import (
    CaptureFailed,
    EnvironmentMismatch,
    ExecutionAbandoned,
    ExecutionInProgress,
    ExternalCollaboratorError,
    InvalidTransition,
    NotFound,
    RestoreFailed,
    RollbackError,
    Timeout,
    ValidationFailed,
    describe_error,
    error_type_of,
)
from rollbackctl.utils.errors import (
    ErrorCategory,
    ErrorInfo,
    classify_exception,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)


class TestTaxonomy:
    """Tests for the rollback error classes."""

    @pytest.mark.parametrize(
        "error",
        [
            NotFound("Rollback point", "rb-1"),
            EnvironmentMismatch("staging", "production"),
            ExecutionInProgress("staging"),
            CaptureFailed("x"),
            RestoreFailed("x"),
            ValidationFailed("smoke test", "exit 1"),
            Timeout("stop services", 30),
            ExternalCollaboratorError("x"),
            ExecutionAbandoned("x"),
        ],
    )
    def test_all_are_rollback_errors(self, error):
        assert isinstance(error, RollbackError)
        assert error.error_type == type(error).__name__

    def test_messages(self):
        assert str(NotFound("Rollback point", "rb-1")) == "Rollback point not found: rb-1"
        assert str(ValidationFailed("smoke test", "exit 1")) == "smoke test: exit 1"
        assert str(Timeout("stop services", 30)) == "stop services timed out after 30s"
        assert "staging" in str(EnvironmentMismatch("staging", "production"))

    def test_describe_error_follows_causes(self):
        try:
            try:
                raise ExternalCollaboratorError("connection refused")
            except ExternalCollaboratorError as e:
                raise RestoreFailed("data-store restore failed") from e
        except RestoreFailed as error:
            assert describe_error(error) == "data-store restore failed: connection refused"

    def test_describe_error_skips_repeated_text(self):
        cause = ExternalCollaboratorError("disk full")
        error = CaptureFailed("data-store snapshot failed: disk full")
        error.__cause__ = cause
        assert describe_error(error) == "data-store snapshot failed: disk full"

    def test_describe_error_skips_empty_causes(self):
        try:
            try:
                raise TimeoutError()
            except TimeoutError as e:
                raise Timeout("stop services", 30) from e
        except Timeout as error:
            assert describe_error(error) == "stop services timed out after 30s"

    def test_error_type_of_foreign_exception(self):
        assert error_type_of(KeyError("x")) == "KeyError"
        assert error_type_of(RestoreFailed("x")) == "RestoreFailed"


class TestDebugMode:
    """Tests for debug mode functionality."""

    def teardown_method(self) -> None:
        set_debug_mode(False)

    def test_enable_disable(self) -> None:
        set_debug_mode(True)
        assert is_debug_mode() is True
        set_debug_mode(False)
        assert is_debug_mode() is False


class TestFormatError:
    """Tests for format_error function."""

    def get_console_output(self, error: ErrorInfo) -> str:
        """Helper to capture console output."""
        string_io = io.StringIO()
        console = Console(file=string_io, force_terminal=False, width=200)
        format_error(error, console)
        return string_io.getvalue()

    def test_message_and_suggestion(self) -> None:
        error = ErrorInfo(
            message="Something went wrong",
            category=ErrorCategory.INTERNAL,
            suggestion="Check the path exists",
        )
        output = self.get_console_output(error)
        assert "Something went wrong" in output
        assert "Check the path exists" in output

    def test_brackets_are_not_markup(self) -> None:
        """Messages containing square brackets are printed verbatim."""
        error = ErrorInfo(message="bad key [commands] data_dump", category=ErrorCategory.CONFIG)
        assert "[commands]" in self.get_console_output(error)

    def test_debug_hint_shown_when_not_debug(self) -> None:
        set_debug_mode(False)
        error = ErrorInfo(
            message="Error",
            category=ErrorCategory.INTERNAL,
            original_error=ValueError("test"),
        )
        assert "ROLLBACKCTL_DEBUG=1" in self.get_console_output(error)

    def test_stack_trace_in_debug_mode(self) -> None:
        set_debug_mode(True)
        try:
            try:
                raise ValueError("deep failure")
            except ValueError as e:
                error = ErrorInfo(
                    message="Error", category=ErrorCategory.INTERNAL, original_error=e
                )
            output = self.get_console_output(error)
        finally:
            set_debug_mode(False)
        assert "Stack trace" in output
        assert "deep failure" in output


class TestClassifyException:
    """Tests for mapping exceptions to display categories."""

    def test_point_not_found(self):
        error = classify_exception(NotFound("Rollback point", "rb-1"))
        assert error.category == ErrorCategory.NOT_FOUND
        assert "list-points" in error.suggestion

    def test_execution_not_found(self):
        error = classify_exception(NotFound("Rollback execution", "rb-1"))
        assert "list-executions" in error.suggestion

    def test_no_usable_point(self):
        error = classify_exception(NotFound("Usable rollback point for environment", "qa"))
        assert "create-point" in error.suggestion

    def test_conflicts(self):
        assert (
            classify_exception(EnvironmentMismatch("staging", "prod")).category
            == ErrorCategory.CONFLICT
        )
        assert classify_exception(ExecutionInProgress("staging")).category == ErrorCategory.CONFLICT

    def test_stuck_execution_suggests_abandon(self):
        error = classify_exception(ExecutionInProgress("staging", "rb-1-abc"))
        assert "abandon-execution rb-1-abc" in error.suggestion

    def test_invalid_transition_is_conflict(self):
        error = classify_exception(InvalidTransition("Execution rb-1 already finished"))
        assert error.category == ErrorCategory.CONFLICT

    def test_snapshot_errors(self):
        error = classify_exception(CaptureFailed("dump failed"), "snapshot capture")
        assert error.category == ErrorCategory.SNAPSHOT
        assert error.message == "Snapshot capture failed: dump failed"

    def test_validation(self):
        error = classify_exception(ValidationFailed("smoke test", "exit 1"))
        assert error.category == ErrorCategory.VALIDATION
        assert "smoke test" in error.message

    def test_external(self):
        error = classify_exception(Timeout("pg_dump", 5), "snapshot capture")
        assert error.category == ErrorCategory.EXTERNAL

    def test_config_error(self):
        error = classify_exception(ValueError("Invalid config file x.toml: bad"))
        assert error.category == ErrorCategory.CONFIG

    def test_file_not_found(self):
        error = classify_exception(FileNotFoundError(2, "No such file", "/tmp/x.db"))
        assert error.category == ErrorCategory.FILE
        assert "/tmp/x.db" in error.message

    def test_unknown_is_internal(self):
        error = classify_exception(RuntimeError("boom"), "rollback")
        assert error.category == ErrorCategory.INTERNAL
        assert "rollback: boom" in error.message


class TestHandleException:
    """Tests for handle_exception function."""

    def test_no_exit(self) -> None:
        console = MagicMock(spec=Console)
        error = handle_exception(console, ValueError("bad input"), exit_on_error=False)
        assert isinstance(error, ErrorInfo)
        console.print.assert_called()

    def test_exits(self) -> None:
        console = MagicMock(spec=Console)
        with pytest.raises(SystemExit) as exc_info:
            handle_exception(console, NotFound("Rollback point", "rb-1"))
        assert exc_info.value.code == 1
