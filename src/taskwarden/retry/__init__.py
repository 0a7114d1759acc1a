"""Retry instruction building and scheduling."""

from .context import (
    build_continue_instruction,
    build_manual_retry_instruction,
    build_retry_instruction,
)
from .scheduler import (
    RetryAborted,
    RetryDecision,
    RetryOutcome,
    RetryRecord,
    RetryScheduler,
    RetryStats,
    compute_backoff,
)

__all__ = [
    "build_retry_instruction",
    "build_manual_retry_instruction",
    "build_continue_instruction",
    "RetryScheduler",
    "RetryOutcome",
    "RetryDecision",
    "RetryRecord",
    "RetryStats",
    "RetryAborted",
    "compute_backoff",
]
