"""Execution state data model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PipelineStatus(str, Enum):
    """Overall pipeline status."""

    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    RECOVERING = "RECOVERING"
    CONTINUING = "CONTINUING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskStatus(str, Enum):
    """Status of a single task."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"


class Task(BaseModel):
    """One unit of work tracked for retry and recovery."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    expected_artifacts: list[str] = Field(default_factory=list)


class RetryInfo(BaseModel):
    """Automatic retry counters."""

    total_retries: int = 0
    per_task_retries: dict[str, int] = Field(default_factory=dict)

    def for_task(self, task_id: str) -> int:
        return self.per_task_retries.get(task_id, 0)


class QualityMetrics(BaseModel):
    """Quality summary reported by the agent. Passed through untouched."""

    model_config = ConfigDict(extra="allow")

    score: float | None = None
    pass_rate: float | None = None


class ExecutionState(BaseModel):
    """The single root record of a pipeline run."""

    model_config = ConfigDict(extra="allow")

    status: PipelineStatus = PipelineStatus.NOT_STARTED
    current_task_id: str | None = None

    total_tasks: int = Field(default=0, ge=0)
    completed_tasks: int = Field(default=0, ge=0)
    failed_tasks: int = Field(default=0, ge=0)

    started_at: datetime | None = None
    last_updated_at: datetime = Field(default_factory=datetime.now)

    retry_info: RetryInfo = Field(default_factory=RetryInfo)
    quality_metrics: QualityMetrics | None = None

    tasks: dict[str, Task] = Field(default_factory=dict)

    @property
    def current_task(self) -> Task | None:
        if self.current_task_id is None:
            return None
        return self.tasks.get(self.current_task_id)

    @property
    def progress_percent(self) -> int:
        """Completed tasks as an integer percentage of the total."""
        if self.total_tasks <= 0:
            return 0
        return self.completed_tasks * 100 // self.total_tasks

    @property
    def completion_ratio(self) -> float:
        if self.total_tasks <= 0:
            return 0.0
        return self.completed_tasks / self.total_tasks

    def invariant_violations(self) -> list[str]:
        """Return human-readable descriptions of broken invariants."""
        problems = []
        if self.completed_tasks + self.failed_tasks > self.total_tasks:
            problems.append(
                f"completed_tasks ({self.completed_tasks}) + failed_tasks "
                f"({self.failed_tasks}) exceeds total_tasks ({self.total_tasks})"
            )
        return problems

    def content_equals(self, other: ExecutionState) -> bool:
        """Compare every field except ``last_updated_at``."""
        exclude = {"last_updated_at"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)
