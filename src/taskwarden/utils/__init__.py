"""Taskwarden utility modules."""

from .errors import (
    ErrorCategory,
    ErrorInfo,
    TaskwardenError,
    classify_exception,
    error_file_not_found,
    error_internal,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)
from .files import atomic_write_bytes, atomic_write_text, tail_lines
from .timing import Ticker, format_duration, seconds_since

__all__ = [
    # Error handling
    "ErrorCategory",
    "ErrorInfo",
    "TaskwardenError",
    "format_error",
    "handle_exception",
    "classify_exception",
    "error_file_not_found",
    "error_internal",
    "set_debug_mode",
    "is_debug_mode",
    # Files
    "atomic_write_text",
    "atomic_write_bytes",
    "tail_lines",
    # Timing
    "Ticker",
    "format_duration",
    "seconds_since",
]
