"""Durable, lock-protected execution state store.

All access to the state document goes through :class:`StateStore`.
Writes are atomic (temp file + ``os.replace``) and read-modify-write
cycles are serialized with a thread lock plus an ``fcntl`` lock on a
``.lock`` sidecar, so the health monitor and the retry scheduler can
mutate state concurrently without lost updates.
"""

from __future__ import annotations

import fcntl
import logging
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import IO

from pydantic import ValidationError

from ..utils.errors import ErrorCategory, TaskwardenError
from ..utils.files import atomic_write_text
from .models import ExecutionState, PipelineStatus, Task

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"

Mutator = Callable[[ExecutionState], "ExecutionState | None"]


class StateError(TaskwardenError):
    category = ErrorCategory.STATE


class StateNotFoundError(StateError):
    suggestion = "Run 'taskwarden state init' to create the execution state"


class StateExistsError(StateError):
    suggestion = "Use --force to overwrite the existing execution state"


class CorruptStateError(StateError):
    suggestion = (
        "Run 'taskwarden recover smart' to restore the newest recovery point, "
        "or 'taskwarden recover restore <point_id>' to pick one"
    )


class StateInvariantError(StateError):
    suggestion = "The update was rejected and the state document was left unchanged"


class TaskNotFoundError(StateError):
    suggestion = "Run 'taskwarden state show' to see the tracked tasks"


def parse_state(raw: bytes | str, source: Path | str = "<memory>") -> ExecutionState:
    """Parse a serialized state document.

    Raises:
        CorruptStateError: If the document is not valid JSON or fails validation.
    """
    try:
        return ExecutionState.model_validate_json(raw)
    except ValidationError as e:
        raise CorruptStateError(
            f"Execution state at {source} is corrupt ({e.error_count()} validation error(s))"
        ) from e


def serialize_state(state: ExecutionState) -> str:
    return state.model_dump_json(indent=2)


class StateStore:
    """File-backed store owning the single ExecutionState document."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(self.path.suffix + _LOCK_SUFFIX)
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._lock_handle: IO[str] | None = None

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store's exclusive lock for a multi-step operation.

        Re-entrant within the owning thread: ``update`` may be called
        while the lock is already held.
        """
        with self._thread_lock:
            if self._depth == 0:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                handle = self.lock_path.open("a+", encoding="utf-8")
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                self._lock_handle = handle
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0 and self._lock_handle is not None:
                    fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
                    self._lock_handle.close()
                    self._lock_handle = None

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def read_raw(self) -> bytes | None:
        """Return the raw document bytes, or None when there is no document."""
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def read(self) -> ExecutionState:
        """Read the current execution state.

        Raises:
            StateNotFoundError: If the document does not exist.
            CorruptStateError: If the document cannot be parsed.
        """
        raw = self.read_raw()
        if raw is None:
            raise StateNotFoundError(f"Execution state not found: {self.path}")
        return parse_state(raw, self.path)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def update(self, mutator: Mutator) -> ExecutionState:
        """Apply *mutator* to the state and persist the result atomically.

        The mutator receives a private deep copy. It returns the new state,
        or None after modifying the copy in place. A result equal to the
        current state (ignoring ``last_updated_at``) is not written.

        Raises:
            CorruptStateError: If the existing document cannot be parsed.
            StateInvariantError: If the result violates a state invariant.
        """
        with self.locked():
            raw = self.read_raw()
            current = parse_state(raw, self.path) if raw is not None else ExecutionState()

            draft = current.model_copy(deep=True)
            result = mutator(draft)
            new_state = draft if result is None else result

            if raw is not None and new_state.content_equals(current):
                return current

            return self._write(new_state)

    def replace(self, state: ExecutionState) -> ExecutionState:
        """Overwrite the document with *state*, refreshing ``last_updated_at``."""
        with self.locked():
            return self._write(state)

    def initialize(
        self,
        task_ids: Sequence[str],
        expected_artifacts: Mapping[str, Sequence[str]] | None = None,
        force: bool = False,
    ) -> ExecutionState:
        """Create a fresh execution state for the given tasks.

        Raises:
            StateExistsError: If a document exists and ``force`` is False.
        """
        artifacts = expected_artifacts or {}
        with self.locked():
            if self.exists() and not force:
                raise StateExistsError(f"Execution state already exists: {self.path}")

            tasks = {
                task_id: Task(id=task_id, expected_artifacts=list(artifacts.get(task_id, [])))
                for task_id in task_ids
            }
            state = ExecutionState(
                status=PipelineStatus.NOT_STARTED,
                total_tasks=len(tasks),
                tasks=tasks,
            )
            logger.info("Initialized execution state with %d task(s) at %s", len(tasks), self.path)
            return self._write(state)

    def _write(self, state: ExecutionState) -> ExecutionState:
        problems = state.invariant_violations()
        if problems:
            raise StateInvariantError("Rejected state update: " + "; ".join(problems))

        new_state = state.model_copy(update={"last_updated_at": datetime.now()})
        atomic_write_text(self.path, serialize_state(new_state))
        return new_state
