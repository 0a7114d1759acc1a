"""Task lifecycle transitions.

Pure mutators for :meth:`StateStore.update`. Each one edits the state it
is given and returns it, keeping the completed/failed counters in step
with task statuses.

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED
    FAILED  -> PENDING (accepted retry or manual continue)
"""

from __future__ import annotations

from datetime import datetime

from .models import ExecutionState, PipelineStatus, Task, TaskStatus
from .store import TaskNotFoundError


def require_task(state: ExecutionState, task_id: str) -> Task:
    """Return the task or raise TaskNotFoundError."""
    task = state.tasks.get(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task not found in execution state: {task_id}")
    return task


def _leave_status(state: ExecutionState, task: Task) -> None:
    if task.status == TaskStatus.COMPLETED:
        state.completed_tasks = max(0, state.completed_tasks - 1)
    elif task.status == TaskStatus.FAILED:
        state.failed_tasks = max(0, state.failed_tasks - 1)


def start_task(state: ExecutionState, task_id: str, now: datetime | None = None) -> ExecutionState:
    now = now or datetime.now()
    task = require_task(state, task_id)

    _leave_status(state, task)
    task.status = TaskStatus.IN_PROGRESS
    task.started_at = now
    task.ended_at = None

    state.current_task_id = task_id
    state.status = PipelineStatus.RUNNING
    if state.started_at is None:
        state.started_at = now
    return state


def complete_task(
    state: ExecutionState, task_id: str, now: datetime | None = None
) -> ExecutionState:
    task = require_task(state, task_id)
    if task.status == TaskStatus.COMPLETED:
        return state

    _leave_status(state, task)
    task.status = TaskStatus.COMPLETED
    task.ended_at = now or datetime.now()
    state.completed_tasks += 1

    if state.tasks and all(t.status == TaskStatus.COMPLETED for t in state.tasks.values()):
        state.status = PipelineStatus.COMPLETED
        state.current_task_id = None
    return state


def fail_task(state: ExecutionState, task_id: str, now: datetime | None = None) -> ExecutionState:
    task = require_task(state, task_id)
    if task.status == TaskStatus.FAILED:
        return state

    _leave_status(state, task)
    task.status = TaskStatus.FAILED
    task.ended_at = now or datetime.now()
    state.failed_tasks += 1
    return state


def reset_task(state: ExecutionState, task_id: str) -> ExecutionState:
    """Put a task back to PENDING and clear its timestamps."""
    task = require_task(state, task_id)

    _leave_status(state, task)
    task.status = TaskStatus.PENDING
    task.started_at = None
    task.ended_at = None
    return state


def recount(state: ExecutionState) -> ExecutionState:
    """Recompute counters from task statuses."""
    statuses = [t.status for t in state.tasks.values()]
    state.total_tasks = max(state.total_tasks, len(statuses))
    state.completed_tasks = statuses.count(TaskStatus.COMPLETED)
    state.failed_tasks = statuses.count(TaskStatus.FAILED)
    return state
