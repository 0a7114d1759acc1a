"""Error classification and recovery points.

Manual recovery actions live in :mod:`taskwarden.recovery.actions`.
"""

from .classifier import (
    RETRYABLE_KINDS,
    Classification,
    ErrorKind,
    classify,
    classify_error,
    is_retryable,
    is_transient,
)
from .points import (
    CorruptRecoveryPointError,
    RecoveryPoint,
    RecoveryPointError,
    RecoveryPointManager,
    RecoveryPointNotFoundError,
)

__all__ = [
    # Classifier
    "ErrorKind",
    "Classification",
    "RETRYABLE_KINDS",
    "classify",
    "classify_error",
    "is_retryable",
    "is_transient",
    # Recovery points
    "RecoveryPoint",
    "RecoveryPointManager",
    "RecoveryPointError",
    "RecoveryPointNotFoundError",
    "CorruptRecoveryPointError",
]
