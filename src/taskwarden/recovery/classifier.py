"""Error classification for retry decisions.

Maps a raw failure message to one error kind. Rules are checked in a
fixed priority order and the first matching kind wins:

    API_ERROR -> TIMEOUT -> NETWORK_ERROR -> PERMISSION_DENIED
    -> INVALID_INPUT -> CONFIGURATION_ERROR -> UNKNOWN_ERROR

Transient kinds (and UNKNOWN_ERROR) are retried automatically; the
structural kinds always go to an operator.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import NamedTuple


class ErrorKind(str, Enum):
    """Error taxonomy shared by the classifier and the retry scheduler."""

    API_ERROR = "API_ERROR"  # Rate limit, quota, overloaded API
    TIMEOUT = "TIMEOUT"  # Deadlines, hung steps
    NETWORK_ERROR = "NETWORK_ERROR"  # DNS, refused/reset connections
    PERMISSION_DENIED = "PERMISSION_DENIED"  # Auth and file permissions
    INVALID_INPUT = "INVALID_INPUT"  # Malformed input or syntax
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"  # Bad or missing settings
    UNKNOWN_ERROR = "UNKNOWN_ERROR"  # Nothing matched


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.API_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.NETWORK_ERROR,
        ErrorKind.UNKNOWN_ERROR,
    }
)

TRANSIENT_KINDS = frozenset(
    {
        ErrorKind.API_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.NETWORK_ERROR,
    }
)


class Classification(NamedTuple):
    """Result of error classification."""

    kind: ErrorKind
    reason: str
    suggested_action: str


# Ordered rule table: (kind, regex_pattern, reason, suggested_action).
# Order matters: the first kind with a matching pattern wins.
RULES: list[tuple[ErrorKind, str, str, str]] = [
    # API errors
    (
        ErrorKind.API_ERROR,
        r"rate[\s_-]*limit(ed)?|too\s*many\s*requests|\b429\b",
        "API rate limited",
        "Wait and retry with backoff",
    ),
    (
        ErrorKind.API_ERROR,
        r"quota\s*(exceeded)?|usage\s*limit",
        "API quota exhausted",
        "Wait for the quota to reset",
    ),
    (
        ErrorKind.API_ERROR,
        r"overloaded|over\s*capacity",
        "API overloaded",
        "Wait and retry",
    ),
    (
        ErrorKind.API_ERROR,
        r"\bapi\b(?!\s*key)",
        "API error",
        "Retry the API call",
    ),
    # Timeouts
    (
        ErrorKind.TIMEOUT,
        r"time[\s_-]*out|timed?\s*out|deadline\s*exceeded|ETIMEDOUT",
        "Operation timed out",
        "Retry; the step may need more time",
    ),
    # Network errors
    (
        ErrorKind.NETWORK_ERROR,
        r"connection\s*(refused|reset|error|failed|lost|aborted)",
        "Network connection failed",
        "Check connectivity and retry",
    ),
    (
        ErrorKind.NETWORK_ERROR,
        r"ECONNREFUSED|ECONNRESET|ENOTFOUND|EHOSTUNREACH",
        "Network socket error",
        "Check connectivity and retry",
    ),
    (
        ErrorKind.NETWORK_ERROR,
        r"\bdns\b|name\s*resolution|could\s*not\s*resolve|network",
        "Network unavailable",
        "Check DNS and network and retry",
    ),
    # Permission errors
    (
        ErrorKind.PERMISSION_DENIED,
        r"permission\s*denied|access\s*denied|EACCES|\bdenied\b",
        "Permission denied",
        "Fix file or account permissions, then retry manually",
    ),
    (
        ErrorKind.PERMISSION_DENIED,
        r"unauthori[sz]ed|forbidden|\b401\b|\b403\b",
        "Authorization failed",
        "Check the API key or token",
    ),
    (
        ErrorKind.PERMISSION_DENIED,
        r"invalid\s*(api\s*)?key|token\s*(expired|invalid)|authentication\s*failed",
        "Invalid credentials",
        "Update credentials",
    ),
    # Invalid input
    (
        ErrorKind.INVALID_INPUT,
        r"invalid|malformed|syntax\s*error|parse\s*error",
        "Invalid input",
        "Correct the input the task was given",
    ),
    (
        ErrorKind.INVALID_INPUT,
        r"(bad|wrong|unexpected)\s*format|format\s*error",
        "Malformed input",
        "Correct the input format",
    ),
    # Configuration errors
    (
        ErrorKind.CONFIGURATION_ERROR,
        r"config(uration)?|settings|environment\s*variable|not\s*configured",
        "Configuration error",
        "Fix the configuration, then continue the task manually",
    ),
]

_COMPILED_RULES = [
    (kind, re.compile(pattern, re.IGNORECASE), reason, action)
    for kind, pattern, reason, action in RULES
]


def classify_error(error_message: str | None) -> Classification:
    """Classify an error message.

    Args:
        error_message: Raw failure text (stderr, log line). May be empty.

    Returns:
        Classification with kind, reason and suggested action. Never raises.
    """
    if not error_message or not error_message.strip():
        return Classification(
            kind=ErrorKind.UNKNOWN_ERROR,
            reason="Empty error message",
            suggested_action="Retry and review the error log",
        )

    for kind, regex, reason, action in _COMPILED_RULES:
        if regex.search(error_message):
            return Classification(kind=kind, reason=reason, suggested_action=action)

    return Classification(
        kind=ErrorKind.UNKNOWN_ERROR,
        reason="Could not classify error",
        suggested_action="Retry and review the error log",
    )


def classify(error_message: str | None) -> ErrorKind:
    """Return only the error kind for a message."""
    return classify_error(error_message).kind


def is_retryable(kind: ErrorKind) -> bool:
    """True if the kind may be retried automatically."""
    return kind in RETRYABLE_KINDS


def is_transient(kind: ErrorKind) -> bool:
    """True for API, timeout and network errors (counted by the health monitor)."""
    return kind in TRANSIENT_KINDS
