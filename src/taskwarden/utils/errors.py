"""Error handling utilities for the taskwarden CLI.

Provides consistent error formatting with:
- Human-friendly messages
- Suggested fixes (manual recovery options)
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by TASKWARDEN_DEBUG=1 or --debug flag
_debug_mode = os.environ.get("TASKWARDEN_DEBUG", "0") == "1"


class ErrorCategory(str, Enum):
    """Categories of errors for consistent formatting."""

    CONFIG = "config"  # Configuration errors
    FILE = "file"  # File not found, permission errors
    STATE = "state"  # Missing, corrupt or inconsistent state document
    RECOVERY = "recovery"  # Recovery point errors
    RETRY = "retry"  # Retry scheduling errors
    AGENT = "agent"  # External agent invocation errors
    NETWORK = "network"  # Network/API errors
    INTERNAL = "internal"  # Internal/unexpected errors


class TaskwardenError(Exception):
    """Base class for supervisor errors.

    Subclasses set ``category`` and ``suggestion`` so the CLI can render
    them without knowing every concrete type.
    """

    category: ErrorCategory = ErrorCategory.INTERNAL
    suggestion: str | None = None


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
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    if error.details:
        if _debug_mode or len(error.details) < 200:
            console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Set TASKWARDEN_DEBUG=1 or use --debug for more details[/dim]")


def error_file_not_found(
    path: str,
    context: str = "file",
    original: Exception | None = None,
) -> ErrorInfo:
    """Create error info for file not found errors."""
    if "status" in path.lower() or path.endswith(".json"):
        suggestion = "Run 'taskwarden state init' to create the execution state"
    elif "config" in path.lower():
        suggestion = "Run 'taskwarden config show' to view the active configuration"
    else:
        suggestion = "Check the path and ensure the file exists"

    return ErrorInfo(
        message=f"{context.capitalize()} not found: {path}",
        category=ErrorCategory.FILE,
        suggestion=suggestion,
        original_error=original,
    )


def error_internal(message: str, original: Exception | None = None) -> ErrorInfo:
    """Create error info for internal/unexpected errors."""
    return ErrorInfo(
        message=f"Internal error: {message}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug. Re-run with --debug and include the stack trace in a report",
        original_error=original,
    )


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo.

    Args:
        exception: The exception to classify
        context: Description of what was being done

    Returns:
        ErrorInfo with appropriate categorization
    """
    if isinstance(exception, TaskwardenError):
        return ErrorInfo(
            message=str(exception),
            category=exception.category,
            suggestion=exception.suggestion,
            original_error=exception,
        )

    if isinstance(exception, FileNotFoundError):
        path = exception.filename or str(exception)
        return error_file_not_found(str(path), context, original=exception)

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    if isinstance(exception, (ConnectionError, TimeoutError)):
        return ErrorInfo(
            message=f"{context} network error: {exception}",
            category=ErrorCategory.NETWORK,
            suggestion="Check your internet connection and the agent API endpoint",
            original_error=exception,
        )

    return error_internal(f"{context}: {exception}", exception)


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
