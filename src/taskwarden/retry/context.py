"""Instruction building for agent retries.

Formats the failure so the agent knows what went wrong, how much retry
budget is left, and that it must re-check progress in the state
document before resuming.
"""

from __future__ import annotations

from pathlib import Path

from ..recovery.classifier import ErrorKind

_RULE = "=" * 60


def build_retry_instruction(
    task_id: str,
    error: str,
    kind: ErrorKind,
    attempt: int,
    max_attempts: int,
    state_file: Path | str,
) -> str:
    """Build the instruction for an automatic retry.

    Args:
        task_id: Task being retried.
        error: Failure text observed for the previous attempt.
        kind: Classified error kind.
        attempt: This retry's number for the task (1-indexed).
        max_attempts: Per-task retry ceiling.
        state_file: State document the agent must consult.

    Returns:
        Instruction text passed to the agent.
    """
    lines = [
        _RULE,
        "PREVIOUS ATTEMPT FAILED - AUTOMATIC RETRY",
        _RULE,
        "",
        f"Task: {task_id}",
        f"Error kind: {kind.value}",
        f"Retry: {attempt} of {max_attempts}",
        "",
        "Error:",
        _indent(_truncate(error or "(no error text captured)")),
        "",
        "Instructions:",
        _indent(
            f"1. Read {state_file} and check how far task {task_id} actually got.\n"
            f"2. If the task's work is already complete, verify its outputs and finish it.\n"
            f"3. Otherwise continue task {task_id} from where it stopped; "
            f"restart it only if its partial work is unusable.\n"
            f"4. Update {state_file} as you progress."
        ),
        "",
        _RULE,
    ]
    return "\n".join(lines)


def build_manual_retry_instruction(task_id: str, state_file: Path | str) -> str:
    """Instruction for an operator-triggered retry."""
    return "\n".join(
        [
            _RULE,
            "MANUAL RETRY REQUESTED BY OPERATOR",
            _RULE,
            "",
            f"Task: {task_id}",
            "",
            "Instructions:",
            _indent(
                f"Read {state_file}, verify the current progress of task {task_id}, "
                f"then continue or redo it as needed and update {state_file}."
            ),
            "",
            _RULE,
        ]
    )


def build_continue_instruction(task_id: str | None, state_file: Path | str) -> str:
    """Instruction to resume the pipeline after a recovery."""
    if task_id:
        focus = f"Continue with task {task_id}."
    else:
        focus = "Continue with the next pending task."
    return (
        f"The pipeline was recovered. Read {state_file} to confirm the current progress. "
        f"{focus} Update {state_file} as you go."
    )


def _indent(text: str, prefix: str = "  ") -> str:
    """Indent each line of text."""
    return "\n".join(prefix + line for line in text.split("\n"))


def _truncate(text: str, max_lines: int = 15) -> str:
    """Keep the head and tail of long error output."""
    lines = text.strip().split("\n")
    if len(lines) <= max_lines:
        return text.strip()

    head = lines[:5]
    tail = lines[-(max_lines - 6) :]
    omitted = len(lines) - len(head) - len(tail)
    return "\n".join(head + [f"... ({omitted} lines omitted) ..."] + tail)
