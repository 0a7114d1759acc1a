"""Manual recovery actions.

Operator-facing repairs for situations automatic retry does not cover:

- smart_state_recovery: repair or restore a broken state document
- verify_task_artifacts: check a task's expected outputs exist
- continue_task: resume an interrupted task based on its artifacts
- auto_recovery: smart recovery followed by continuing the current task

Every mutating action writes a recovery report.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..reports.reporter import Reporter
from ..retry.context import build_continue_instruction
from ..state import (
    CorruptStateError,
    ExecutionState,
    PipelineStatus,
    StateNotFoundError,
    StateStore,
    TaskNotFoundError,
    complete_task,
    recount,
    require_task,
    reset_task,
)
from .points import RecoveryPointManager

logger = logging.getLogger(__name__)


@dataclass
class ArtifactVerification:
    """Which expected artifacts of a task exist on disk."""

    task_id: str
    present: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


@dataclass
class RecoveryOutcome:
    """Result of a recovery action."""

    state: ExecutionState
    steps: list[str] = field(default_factory=list)
    report_path: Path | None = None
    instruction: str | None = None


def smart_state_recovery(
    store: StateStore,
    points: RecoveryPointManager,
    reporter: Reporter,
) -> RecoveryOutcome:
    """Bring the state document back to a consistent shape.

    - Missing or corrupt document: restore the newest recovery point.
    - Current task id pointing at an unknown task: cleared.
    - Counters violating the count invariant: recomputed from task statuses.

    Raises:
        CorruptStateError / StateNotFoundError: If the document is broken and
            there is no recovery point to restore.
    """
    steps: list[str] = []
    before: ExecutionState | None = None

    try:
        before = store.read()
    except (CorruptStateError, StateNotFoundError) as e:
        latest = points.latest()
        if latest is None:
            logger.error("State is unusable and no recovery point exists: %s", e)
            raise
        points.restore(latest.id)
        steps.append(f"Restored recovery point {latest.id} ({e})")

    def repair(state: ExecutionState) -> ExecutionState:
        if state.current_task_id is not None and state.current_task_id not in state.tasks:
            steps.append(f"Cleared dangling current task '{state.current_task_id}'")
            state.current_task_id = None
        if state.invariant_violations():
            recount(state)
            steps.append("Recomputed task counters from task statuses")
        return state

    after = store.update(repair)
    instruction = build_continue_instruction(after.current_task_id, store.path.name)
    report = reporter.write_recovery_report("smart", before, after, steps, instruction)

    logger.info("Smart recovery finished with %d step(s)", len(steps))
    return RecoveryOutcome(state=after, steps=steps, report_path=report, instruction=instruction)


def verify_task_artifacts(store: StateStore, task_id: str, root: Path) -> ArtifactVerification:
    """Check that each expected artifact of a task exists under *root*.

    Raises:
        TaskNotFoundError: If the task is not tracked.
    """
    task = require_task(store.read(), task_id)
    verification = ArtifactVerification(task_id=task_id)
    for artifact in task.expected_artifacts:
        if (Path(root) / artifact).exists():
            verification.present.append(artifact)
        else:
            verification.missing.append(artifact)
    return verification


def continue_task(
    store: StateStore,
    root: Path,
    reporter: Reporter,
    task_id: str | None = None,
) -> RecoveryOutcome:
    """Resume an interrupted task.

    If any expected artifact is missing the task is reset to PENDING and
    the pipeline set to RECOVERING. Otherwise the task is marked
    COMPLETED and the pipeline set to CONTINUING.

    Raises:
        TaskNotFoundError: If no task is given and there is no current task.
    """
    before = store.read()
    task_id = task_id or before.current_task_id
    if task_id is None:
        raise TaskNotFoundError("No current task to continue; pass a task id")

    verification = verify_task_artifacts(store, task_id, root)
    steps: list[str] = []

    if verification.missing:
        steps.append(f"Missing artifacts for {task_id}: {', '.join(verification.missing)}")

        def mutate(state: ExecutionState) -> ExecutionState:
            reset_task(state, task_id)
            state.current_task_id = task_id
            state.status = PipelineStatus.RECOVERING
            return state

        steps.append(f"Reset task {task_id} to PENDING")
    else:
        steps.append(f"All {len(verification.present)} expected artifact(s) of {task_id} present")

        def mutate(state: ExecutionState) -> ExecutionState:
            complete_task(state, task_id)
            if state.status != PipelineStatus.COMPLETED:
                state.status = PipelineStatus.CONTINUING
            return state

        steps.append(f"Marked task {task_id} COMPLETED")

    after = store.update(mutate)
    next_task = task_id if verification.missing else None
    instruction = build_continue_instruction(next_task, store.path.name)
    report = reporter.write_recovery_report("continuation", before, after, steps, instruction)

    logger.info("Continued task %s (%s)", task_id, "reset" if verification.missing else "completed")
    return RecoveryOutcome(state=after, steps=steps, report_path=report, instruction=instruction)


def auto_recovery(
    store: StateStore,
    points: RecoveryPointManager,
    root: Path,
    reporter: Reporter,
) -> RecoveryOutcome:
    """Smart recovery, then continue the current task if there is one."""
    smart = smart_state_recovery(store, points, reporter)
    steps = list(smart.steps)

    if smart.state.current_task_id is None or smart.state.status == PipelineStatus.COMPLETED:
        steps.append("No interrupted task to continue")
        return RecoveryOutcome(
            state=smart.state,
            steps=steps,
            report_path=smart.report_path,
            instruction=smart.instruction,
        )

    continued = continue_task(store, root, reporter, smart.state.current_task_id)
    steps.extend(continued.steps)
    return RecoveryOutcome(
        state=continued.state,
        steps=steps,
        report_path=continued.report_path,
        instruction=continued.instruction,
    )
