"""Retry scheduling with exponential backoff and bounded budgets.

A failure is retried only if, in order:

1. the pipeline-wide retry count is below ``max_total_retries``;
2. the task's retry count is below ``max_retry_per_task``;
3. the error kind is retryable.

The ceiling checks and the counter increments happen inside one locked
state update, so concurrent callers cannot both pass a ceiling. An
accepted retry takes a recovery point, waits out the backoff on an
interruptible stop event, then re-invokes the agent. A refusal changes
no counters and leaves a durable alert listing the manual options. A task
that already completed is left untouched.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from ..agent import AgentResult, AgentRunner
from ..config import RetryConfig
from ..health.models import Severity
from ..recovery.classifier import ErrorKind, classify_error, is_retryable
from ..recovery.points import RecoveryPoint, RecoveryPointManager
from ..reports.alerts import MANUAL_RECOVERY_OPTIONS, AlertHistory
from ..state import (
    ExecutionState,
    PipelineStatus,
    StateStore,
    TaskStatus,
    fail_task,
    require_task,
    reset_task,
    start_task,
)
from ..utils.errors import ErrorCategory, TaskwardenError
from ..utils.files import tail_lines
from ..utils.timing import Ticker
from .context import build_manual_retry_instruction, build_retry_instruction

logger = logging.getLogger(__name__)

# Largest exponent evaluated before the cap applies
_MAX_EXPONENT = 62


class RetryOutcome(str, Enum):
    """Result of one retry attempt."""

    RETRIED_SUCCESS = "RETRIED_SUCCESS"
    RETRIED_FAILURE = "RETRIED_FAILURE"
    REFUSED = "REFUSED"


class RetryAborted(TaskwardenError):
    """Raised when the stop event fires during the backoff wait."""

    category = ErrorCategory.RETRY
    suggestion = "The retry counters were already consumed; run 'taskwarden retry run <task_id>' to retry by hand"


@dataclass
class RetryDecision:
    """Whether a failure may be retried, and with what delay.

    Attributes:
        accepted: True if the retry may proceed.
        reason: Why it was accepted or refused.
        attempt: The task's retry count before this decision.
        delay: Backoff in seconds (0 when refused).
        ceiling_reached: True if refused by a retry ceiling.
        already_completed: True if the task had completed; nothing changes.
    """

    accepted: bool
    reason: str
    attempt: int = 0
    delay: float = 0.0
    ceiling_reached: bool = False
    already_completed: bool = False


@dataclass
class RetryRecord:
    """Per-task retry view derived from state plus this process's history."""

    task_id: str
    attempt_count: int
    last_error_kind: ErrorKind | None = None
    next_eligible_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "attempt_count": self.attempt_count,
            "last_error_kind": self.last_error_kind.value if self.last_error_kind else None,
            "next_eligible_at": self.next_eligible_at.isoformat() if self.next_eligible_at else None,
        }


@dataclass
class RetryStats:
    """Retry counters against their ceilings."""

    total_retries: int
    max_total_retries: int
    max_retry_per_task: int
    per_task_retries: dict[str, int] = field(default_factory=dict)
    recent_points: list[RecoveryPoint] = field(default_factory=list)

    @property
    def remaining_total(self) -> int:
        return max(0, self.max_total_retries - self.total_retries)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_retries": self.total_retries,
            "max_total_retries": self.max_total_retries,
            "remaining_total": self.remaining_total,
            "max_retry_per_task": self.max_retry_per_task,
            "per_task_retries": dict(self.per_task_retries),
            "recent_points": [
                {"id": p.id, "task_id": p.task_id, "reason": p.reason} for p in self.recent_points
            ],
        }


def compute_backoff(attempt: int, base: float = 30.0, maximum: float = 1800.0) -> float:
    """Backoff delay for a retry: ``min(base * 2**attempt, maximum)``.

    Args:
        attempt: The task's retry count before this retry (0 for the first).
        base: Delay for the first retry, in seconds.
        maximum: Cap, in seconds.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be non-negative, got {attempt}")
    return float(min(base * 2 ** min(attempt, _MAX_EXPONENT), maximum))


class RetryScheduler:
    """Decides on and carries out automatic retries."""

    def __init__(
        self,
        store: StateStore,
        points: RecoveryPointManager,
        agent: AgentRunner,
        config: RetryConfig | None = None,
        alerts: AlertHistory | None = None,
        stop_event: threading.Event | None = None,
        error_log: Path | None = None,
        wait: Callable[[float], bool] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.points = points
        self.agent = agent
        self.config = config or RetryConfig()
        self.alerts = alerts
        self.stop_event = stop_event or threading.Event()
        self.error_log = error_log
        self._wait = wait or self.stop_event.wait
        self._clock = clock

        self._last_kind: dict[str, ErrorKind] = {}
        self._next_eligible: dict[str, datetime] = {}
        self._last_error: dict[str, str] = {}
        self._seen_failures: set[tuple[str, datetime | None]] = set()

    # =========================================================================
    # Decision
    # =========================================================================

    def evaluate(self, state: ExecutionState, task_id: str, kind: ErrorKind) -> RetryDecision:
        """Apply the retry policy to a state. Pure: nothing is changed."""
        total = state.retry_info.total_retries
        per_task = state.retry_info.for_task(task_id)

        task = state.tasks.get(task_id)
        if task is not None and task.status == TaskStatus.COMPLETED:
            return RetryDecision(
                accepted=False,
                reason=f"Task {task_id} already completed",
                attempt=per_task,
                already_completed=True,
            )
        if total >= self.config.max_total_retries:
            return RetryDecision(
                accepted=False,
                reason=f"Total retry ceiling reached ({total}/{self.config.max_total_retries})",
                attempt=per_task,
                ceiling_reached=True,
            )
        if per_task >= self.config.max_retry_per_task:
            return RetryDecision(
                accepted=False,
                reason=(
                    f"Retry ceiling for task {task_id} reached "
                    f"({per_task}/{self.config.max_retry_per_task})"
                ),
                attempt=per_task,
                ceiling_reached=True,
            )
        if not is_retryable(kind):
            return RetryDecision(
                accepted=False,
                reason=f"{kind.value} is never retried automatically",
                attempt=per_task,
            )

        delay = compute_backoff(per_task, self.config.base_delay, self.config.max_delay)
        return RetryDecision(
            accepted=True,
            reason=f"Retry {per_task + 1} of {self.config.max_retry_per_task} for {kind.value}",
            attempt=per_task,
            delay=delay,
        )

    # =========================================================================
    # Retry
    # =========================================================================

    def attempt_retry(
        self,
        task_id: str,
        error_kind: ErrorKind,
        error_message: str = "",
    ) -> RetryOutcome:
        """Decide on a retry for a failed task and carry it out.

        Raises:
            TaskNotFoundError: If the task is not tracked.
            RetryAborted: If the stop event fires during the backoff wait.
        """
        decisions: list[RetryDecision] = []

        def decide(state: ExecutionState) -> ExecutionState:
            require_task(state, task_id)
            decision = self.evaluate(state, task_id, error_kind)
            decisions.append(decision)

            if decision.already_completed:
                return state
            if not decision.accepted:
                if state.tasks[task_id].status != TaskStatus.FAILED:
                    fail_task(state, task_id, self._clock())
                if state.current_task_id == task_id:
                    state.status = PipelineStatus.FAILED
                self._seen_failures.add((task_id, state.tasks[task_id].ended_at))
                return state

            info = state.retry_info
            info.total_retries += 1
            info.per_task_retries[task_id] = info.for_task(task_id) + 1
            reset_task(state, task_id)
            state.current_task_id = task_id
            state.status = PipelineStatus.RECOVERING
            return state

        self.store.update(decide)
        decision = decisions[-1]
        self._last_kind[task_id] = error_kind
        if error_message:
            self._last_error[task_id] = error_message

        if decision.already_completed:
            logger.info("Retry of %s skipped: %s", task_id, decision.reason)
            return RetryOutcome.REFUSED
        if not decision.accepted:
            logger.warning("Retry refused for %s: %s", task_id, decision.reason)
            self._escalate(task_id, error_kind, error_message, decision)
            return RetryOutcome.REFUSED

        logger.info(
            "Retry accepted for %s (%s); waiting %.0fs", task_id, decision.reason, decision.delay
        )
        self._next_eligible[task_id] = self._clock() + timedelta(seconds=decision.delay)
        self.points.create(task_id, f"retry:{error_kind.value}")
        self.points.prune()

        if self._wait(decision.delay):
            raise RetryAborted(f"Retry of {task_id} aborted during backoff")

        self.store.update(lambda s: start_task(s, task_id, self._clock()))

        instruction = build_retry_instruction(
            task_id=task_id,
            error=error_message,
            kind=error_kind,
            attempt=decision.attempt + 1,
            max_attempts=self.config.max_retry_per_task,
            state_file=self.store.path.name,
        )
        result = self.agent.run(instruction)
        return self._settle(task_id, result)

    def _settle(self, task_id: str, result: AgentResult) -> RetryOutcome:
        if result.success:
            logger.info("Retry of %s succeeded", task_id)
            return RetryOutcome.RETRIED_SUCCESS

        self._last_error[task_id] = result.error_message

        def mark_failed(state: ExecutionState) -> ExecutionState:
            task = state.tasks.get(task_id)
            if task is not None and task.status == TaskStatus.IN_PROGRESS:
                fail_task(state, task_id, self._clock())
            return state

        self.store.update(mark_failed)
        logger.warning("Retry of %s failed: %s", task_id, result.error_message)
        return RetryOutcome.RETRIED_FAILURE

    def _escalate(
        self,
        task_id: str,
        kind: ErrorKind,
        error_message: str,
        decision: RetryDecision,
    ) -> None:
        if self.alerts is None:
            return
        if decision.ceiling_reached:
            title = f"Retry budget exhausted for {task_id}"
            severity = Severity.CRITICAL
        else:
            title = f"Automatic retry refused for {task_id}"
            severity = Severity.HIGH

        detail = decision.reason
        if error_message:
            detail += f" ({kind.value}: {error_message.strip()[:200]})"
        self.alerts.append(severity, title, detail, MANUAL_RECOVERY_OPTIONS)

    def handle_failure(self, task_id: str, error_message: str) -> RetryOutcome:
        """Classify a failure message and attempt a retry."""
        classification = classify_error(error_message)
        logger.info(
            "Failure on %s classified as %s (%s)",
            task_id,
            classification.kind.value,
            classification.reason,
        )
        return self.attempt_retry(task_id, classification.kind, error_message)

    def manual_retry(self, task_id: str) -> AgentResult | None:
        """Re-run a task on operator request.

        Bypasses the retry ceilings and consumes no retry budget. Does
        nothing when the pipeline is already COMPLETED.

        Returns:
            The agent result, or None if nothing was run.
        """
        state = self.store.read()
        if state.status == PipelineStatus.COMPLETED:
            logger.info("Pipeline already completed; manual retry of %s skipped", task_id)
            return None
        require_task(state, task_id)

        self.points.create(task_id, "manual_retry")
        self.points.prune()
        self.store.update(lambda s: start_task(s, task_id, self._clock()))

        result = self.agent.run(build_manual_retry_instruction(task_id, self.store.path.name))
        self._settle(task_id, result)
        return result

    # =========================================================================
    # Failure watching
    # =========================================================================

    def last_error_for(self, task_id: str) -> str:
        """Best available failure text for a task."""
        if task_id in self._last_error:
            return self._last_error[task_id]
        if self.error_log is None:
            return ""
        lines = [line for line in tail_lines(self.error_log, 50) if line.strip()]
        for line in reversed(lines):
            if task_id in line:
                return line
        return lines[-1] if lines else ""

    def scan_failures(self) -> list[tuple[str, RetryOutcome]]:
        """Handle each FAILED task not handled before.

        A failure is identified by task id and ``ended_at``, so a task that
        fails again after a retry is picked up again, while a refused task
        (whose ``ended_at`` does not change) is not.
        """
        state = self.store.read()
        outcomes = []
        for task_id, task in state.tasks.items():
            if task.status != TaskStatus.FAILED:
                continue
            key = (task_id, task.ended_at)
            if key in self._seen_failures:
                continue
            self._seen_failures.add(key)
            outcomes.append((task_id, self.handle_failure(task_id, self.last_error_for(task_id))))
            if self.stop_event.is_set():
                break
        return outcomes

    def watch(self, interval: float = 30.0) -> None:
        """Scan for failed tasks until the stop event is set."""
        logger.info("Watching for failed tasks every %.0fs", interval)
        for _ in Ticker(interval, self.stop_event):
            try:
                self.scan_failures()
            except RetryAborted:
                break
            except TaskwardenError as e:
                logger.error(f"Failure scan error: {e}")
            except OSError as e:
                logger.error(f"Failure scan error: {e}")
                self._alert_fault(e)

    def _alert_fault(self, error: OSError) -> None:
        if self.alerts is None:
            return
        try:
            self.alerts.append(Severity.HIGH, "Failure scan failed", str(error))
        except OSError as e:
            logger.error(f"Could not record alert: {e}")

    # =========================================================================
    # Reporting
    # =========================================================================

    def stats(self, recent: int = 5) -> RetryStats:
        state = self.store.read()
        return RetryStats(
            total_retries=state.retry_info.total_retries,
            max_total_retries=self.config.max_total_retries,
            max_retry_per_task=self.config.max_retry_per_task,
            per_task_retries=dict(state.retry_info.per_task_retries),
            recent_points=self.points.list(limit=recent),
        )

    def records(self) -> list[RetryRecord]:
        state = self.store.read()
        task_ids = sorted(set(state.retry_info.per_task_retries) | set(self._last_kind))
        return [
            RetryRecord(
                task_id=task_id,
                attempt_count=state.retry_info.for_task(task_id),
                last_error_kind=self._last_kind.get(task_id),
                next_eligible_at=self._next_eligible.get(task_id),
            )
            for task_id in task_ids
        ]
