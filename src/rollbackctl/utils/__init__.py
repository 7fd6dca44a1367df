"""rollbackctl utility modules."""

from .errors import (
    ErrorCategory,
    ErrorInfo,
    classify_exception,
    error_internal,
    error_not_found,
    error_snapshot,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)

__all__ = [
    # Error handling
    "ErrorCategory",
    "ErrorInfo",
    "format_error",
    "handle_exception",
    "classify_exception",
    "error_not_found",
    "error_snapshot",
    "error_internal",
    "set_debug_mode",
    "is_debug_mode",
]
