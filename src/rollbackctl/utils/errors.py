"""Error handling utilities for the rollbackctl CLI.

Provides consistent error formatting with:
- Human-friendly messages
- Suggested fixes
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from rich.markup import escape

from ..recovery.errors import (
    CaptureFailed,
    EnvironmentMismatch,
    ExecutionCancelled,
    ExecutionInProgress,
    ExternalCollaboratorError,
    InvalidTransition,
    NotFound,
    RestoreFailed,
    RollbackError,
    Timeout,
    ValidationFailed,
    describe_error,
)

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by ROLLBACKCTL_DEBUG=1 or --debug flag
_debug_mode = os.environ.get("ROLLBACKCTL_DEBUG", "0") == "1"


class ErrorCategory(str, Enum):
    """Categories of errors for consistent formatting."""

    CONFIG = "config"  # Configuration errors
    FILE = "file"  # File not found, permission errors
    NOT_FOUND = "not_found"  # Unknown rollback point or execution
    CONFLICT = "conflict"  # Environment mismatch, rollback in progress
    SNAPSHOT = "snapshot"  # Capture/restore errors
    VALIDATION = "validation"  # Failed checks
    EXTERNAL = "external"  # Data platform, git, shell commands
    INTERNAL = "internal"  # Internal/unexpected errors


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    category: ErrorCategory
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Format and display an error with consistent styling.

    Args:
        error: Structured error information
        console: Rich console for output
    """
    console.print(f"[bold red]Error:[/bold red] {escape(error.message)}")

    # Show details if available (in debug mode or if short)
    if error.details:
        if _debug_mode or len(error.details) < 200:
            console.print(f"[dim]{escape(error.details)}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {escape(error.suggestion)}")

    # Show stack trace in debug mode
    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{escape(line.rstrip())}[/dim]")

    if not _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Set ROLLBACKCTL_DEBUG=1 or use --debug for more details[/dim]")


def error_not_found(exception: NotFound) -> ErrorInfo:
    """Create error info for an unknown rollback point or execution."""
    kind = exception.kind.lower()
    if "execution" in kind:
        suggestion = "Run 'rollbackctl list-executions' to see recorded executions"
    elif "usable" in kind:
        suggestion = "Run 'rollbackctl create-point ENVIRONMENT' to capture one"
    else:
        suggestion = "Run 'rollbackctl list-points' to see available rollback points"

    return ErrorInfo(
        message=str(exception),
        category=ErrorCategory.NOT_FOUND,
        suggestion=suggestion,
        original_error=exception,
    )


def error_snapshot(exception: RollbackError, context: str) -> ErrorInfo:
    """Create error info for capture and restore errors."""
    if isinstance(exception, CaptureFailed):
        suggestion = "Check the data_dump command and the snapshots section of the config"
    else:
        suggestion = "Check that the snapshot artifacts still exist and are readable"

    return ErrorInfo(
        message=f"{context.capitalize()} failed: {describe_error(exception)}",
        category=ErrorCategory.SNAPSHOT,
        suggestion=suggestion,
        original_error=exception,
    )


def error_internal(message: str, original: Exception | None = None) -> ErrorInfo:
    """Create error info for internal/unexpected errors."""
    return ErrorInfo(
        message=f"Internal error: {message}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug; rerun with --debug and keep the stack trace",
        original_error=original,
    )


def handle_exception(
    console: Console,
    exception: Exception,
    context: str = "operation",
    exit_code: int = 1,
    exit_on_error: bool = True,
) -> ErrorInfo:
    """Handle an exception and display a formatted error.

    Args:
        console: Rich console for output
        exception: The exception to handle
        context: Description of what was being done
        exit_code: Exit code to use if exit_on_error is True
        exit_on_error: Whether to exit after displaying the error

    Returns:
        ErrorInfo for the error (useful if not exiting)
    """
    error = classify_exception(exception, context)
    format_error(error, console)

    if exit_on_error:
        sys.exit(exit_code)

    return error


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo.

    Args:
        exception: The exception to classify
        context: Description of what was being done

    Returns:
        ErrorInfo with appropriate categorization
    """
    if isinstance(exception, NotFound):
        return error_not_found(exception)

    if isinstance(exception, EnvironmentMismatch):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.CONFLICT,
            suggestion=f"Run 'rollbackctl list-points {exception.expected}' to pick a point "
            "from the right environment",
            original_error=exception,
        )

    if isinstance(exception, ExecutionInProgress):
        if exception.execution_id:
            suggestion = (
                "Wait for the running rollback to finish. If its process is gone, run "
                f"'rollbackctl abandon-execution {exception.execution_id}'"
            )
        else:
            suggestion = "Wait for the running rollback to finish, then retry"
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.CONFLICT,
            suggestion=suggestion,
            original_error=exception,
        )

    if isinstance(exception, InvalidTransition):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.CONFLICT,
            suggestion="Run 'rollbackctl show-execution ID' to see its current status",
            original_error=exception,
        )

    if isinstance(exception, (CaptureFailed, RestoreFailed)):
        return error_snapshot(exception, context)

    if isinstance(exception, ValidationFailed):
        return ErrorInfo(
            message=f"Check '{exception.check_name}' failed: {exception.reason}",
            category=ErrorCategory.VALIDATION,
            suggestion="Fix the environment and run the command again",
            original_error=exception,
        )

    if isinstance(exception, (Timeout, ExternalCollaboratorError)):
        return ErrorInfo(
            message=f"{context.capitalize()} failed: {describe_error(exception)}",
            category=ErrorCategory.EXTERNAL,
            suggestion="Check the configured command and its timeout",
            original_error=exception,
        )

    if isinstance(exception, ExecutionCancelled):
        return error_internal(f"{context}: {exception}", exception)

    # File errors
    if isinstance(exception, FileNotFoundError):
        path = exception.filename or str(exception)
        return ErrorInfo(
            message=f"File not found: {path}",
            category=ErrorCategory.FILE,
            suggestion="Check the path and ensure the file exists",
            original_error=exception,
        )

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    # Config errors
    error_str = str(exception).lower()
    if any(word in error_str for word in ["config", "toml"]):
        return ErrorInfo(
            message=f"Configuration error: {exception}",
            category=ErrorCategory.CONFIG,
            suggestion="Run 'rollbackctl config show' to view current configuration",
            original_error=exception,
        )

    return error_internal(f"{context}: {exception}", exception)
