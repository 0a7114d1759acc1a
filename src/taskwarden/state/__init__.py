"""Execution state model, store and task lifecycle transitions."""

from .models import (
    ExecutionState,
    PipelineStatus,
    QualityMetrics,
    RetryInfo,
    Task,
    TaskStatus,
)
from .store import (
    CorruptStateError,
    StateError,
    StateExistsError,
    StateInvariantError,
    StateNotFoundError,
    StateStore,
    TaskNotFoundError,
    parse_state,
    serialize_state,
)
from .transitions import (
    complete_task,
    fail_task,
    recount,
    require_task,
    reset_task,
    start_task,
)

__all__ = [
    # Models
    "ExecutionState",
    "PipelineStatus",
    "QualityMetrics",
    "RetryInfo",
    "Task",
    "TaskStatus",
    # Store
    "StateStore",
    "parse_state",
    "serialize_state",
    "StateError",
    "StateNotFoundError",
    "StateExistsError",
    "CorruptStateError",
    "StateInvariantError",
    "TaskNotFoundError",
    # Transitions
    "start_task",
    "complete_task",
    "fail_task",
    "reset_task",
    "recount",
    "require_task",
]
