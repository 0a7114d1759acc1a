"""Recovery points: immutable snapshots of the execution state.

Each point is stored as ``<id>.json`` (machine readable) plus ``<id>.md``
(a short human note) in the recovery directory. Ids are
``rp_<timestamp>`` with microsecond resolution and are strictly
increasing, so lexical order is creation order.

Restoring a point first validates it, then backs up the live document
under ``backups/pre_recovery_<timestamp>.json`` and replaces the live
document. A failed restore never touches the live document.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from ..state import ExecutionState, StateStore
from ..utils.errors import ErrorCategory, TaskwardenError
from ..utils.files import atomic_write_bytes, atomic_write_text

logger = logging.getLogger(__name__)

POINT_PREFIX = "rp_"
BACKUP_PREFIX = "pre_recovery_"
ID_TIME_FORMAT = "%Y%m%dT%H%M%S%f"
BACKUPS_DIR = "backups"

_POINT_ID_RE = re.compile(r"^rp_\d{8}T\d{12}$")


class RecoveryPointError(TaskwardenError):
    category = ErrorCategory.RECOVERY


class RecoveryPointNotFoundError(RecoveryPointError):
    suggestion = "Run 'taskwarden recover list' to see available recovery points"


class CorruptRecoveryPointError(RecoveryPointError):
    suggestion = "Pick another point from 'taskwarden recover list'; the live state was not changed"


class RecoveryPoint(BaseModel):
    """A snapshot of the execution state taken at a significant event."""

    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str | None = None
    reason: str
    created_at: datetime
    state_snapshot: ExecutionState

    @property
    def progress(self) -> str:
        snap = self.state_snapshot
        return f"{snap.completed_tasks}/{snap.total_tasks}"


def _timestamp_id(prefix: str, moment: datetime) -> str:
    return f"{prefix}{moment.strftime(ID_TIME_FORMAT)}"


def _id_time(point_id: str, prefix: str) -> datetime:
    return datetime.strptime(point_id[len(prefix) :], ID_TIME_FORMAT)


class RecoveryPointManager:
    """Creates, lists, restores and prunes recovery points."""

    def __init__(self, store: StateStore, directory: Path, max_points: int = 20):
        self.store = store
        self.directory = Path(directory)
        self.max_points = max_points

    @property
    def backups_dir(self) -> Path:
        return self.directory / BACKUPS_DIR

    def _point_path(self, point_id: str) -> Path:
        return self.directory / f"{point_id}.json"

    def _note_path(self, point_id: str) -> Path:
        return self.directory / f"{point_id}.md"

    def _point_ids(self) -> list[str]:
        """All point ids on disk, oldest first."""
        if not self.directory.exists():
            return []
        ids = [
            p.stem
            for p in self.directory.glob(f"{POINT_PREFIX}*.json")
            if _POINT_ID_RE.match(p.stem)
        ]
        return sorted(ids)

    def _backup_paths(self) -> list[Path]:
        if not self.backups_dir.exists():
            return []
        return sorted(self.backups_dir.glob(f"{BACKUP_PREFIX}*.json"))

    def _next_id(self) -> str:
        now = datetime.now()
        ids = self._point_ids()
        if ids:
            newest = _id_time(ids[-1], POINT_PREFIX)
            if now <= newest:
                now = newest + timedelta(microseconds=1)
        return _timestamp_id(POINT_PREFIX, now)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, task_id: str | None, reason: str) -> str:
        """Snapshot the current state.

        Never mutates the state document.

        Raises:
            StateNotFoundError: If there is no state to snapshot.
            CorruptStateError: If the live document cannot be parsed.

        Returns:
            The new recovery point id.
        """
        with self.store.locked():
            snapshot = self.store.read()
            point_id = self._next_id()
            point = RecoveryPoint(
                id=point_id,
                task_id=task_id,
                reason=reason,
                created_at=datetime.now(),
                state_snapshot=snapshot,
            )
            atomic_write_text(self._point_path(point_id), point.model_dump_json(indent=2))
            atomic_write_text(self._note_path(point_id), _render_note(point))

        logger.info("Created recovery point %s (task=%s, reason=%s)", point_id, task_id, reason)
        return point_id

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, point_id: str) -> RecoveryPoint:
        """Load and validate a recovery point.

        Raises:
            RecoveryPointNotFoundError: If no such point exists.
            CorruptRecoveryPointError: If the point cannot be read or validated.
        """
        path = self._point_path(point_id)
        if not _POINT_ID_RE.match(point_id) or not path.exists():
            raise RecoveryPointNotFoundError(f"Recovery point not found: {point_id}")

        try:
            point = RecoveryPoint.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            raise CorruptRecoveryPointError(f"Recovery point {point_id} is corrupt: {e}") from e

        problems = point.state_snapshot.invariant_violations()
        if problems:
            raise CorruptRecoveryPointError(
                f"Recovery point {point_id} holds an inconsistent state: " + "; ".join(problems)
            )
        return point

    def latest(self) -> RecoveryPoint | None:
        """Newest readable recovery point, or None."""
        for point_id in reversed(self._point_ids()):
            try:
                return self.get(point_id)
            except CorruptRecoveryPointError as e:
                logger.warning("Skipping corrupt recovery point: %s", e)
        return None

    def list(self, limit: int | None = None) -> list[RecoveryPoint]:
        """Readable recovery points, newest first."""
        points: list[RecoveryPoint] = []
        for point_id in reversed(self._point_ids()):
            if limit is not None and len(points) >= limit:
                break
            try:
                points.append(self.get(point_id))
            except CorruptRecoveryPointError as e:
                logger.warning("Skipping corrupt recovery point: %s", e)
        return points

    def count(self) -> int:
        return len(self._point_ids())

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, point_id: str) -> ExecutionState:
        """Replace the live state with a recovery point's snapshot.

        Returns:
            The restored state (``last_updated_at`` set to restore time).

        Raises:
            RecoveryPointNotFoundError: Unknown point; live state untouched.
            CorruptRecoveryPointError: Unreadable point; live state untouched.
        """
        point = self.get(point_id)

        with self.store.locked():
            raw = self.store.read_raw()
            if raw is not None:
                backup_path = self._write_backup(raw)
                logger.info("Backed up live state to %s", backup_path)
            restored = self.store.replace(point.state_snapshot)

        self._prune_backups(self.max_points)
        logger.info("Restored recovery point %s", point_id)
        return restored

    def _write_backup(self, raw: bytes) -> Path:
        now = datetime.now()
        path = self.backups_dir / f"{_timestamp_id(BACKUP_PREFIX, now)}.json"
        while path.exists():
            now += timedelta(microseconds=1)
            path = self.backups_dir / f"{_timestamp_id(BACKUP_PREFIX, now)}.json"
        atomic_write_bytes(path, raw)
        return path

    def backups(self) -> list[Path]:
        """Pre-recovery backups, newest first."""
        return list(reversed(self._backup_paths()))

    # ------------------------------------------------------------------
    # Prune
    # ------------------------------------------------------------------

    def prune(self, max_retained: int | None = None) -> int:
        """Delete the oldest points beyond the cap.

        The newest point is always kept, even with a cap of 0. Pruning an
        already-pruned set is a no-op.

        Returns:
            Number of recovery points deleted.
        """
        cap = self.max_points if max_retained is None else max_retained
        keep = max(cap, 1)

        ids = self._point_ids()
        excess = ids[: max(0, len(ids) - keep)]
        for point_id in excess:
            self._point_path(point_id).unlink(missing_ok=True)
            self._note_path(point_id).unlink(missing_ok=True)

        if excess:
            logger.info("Pruned %d recovery point(s)", len(excess))

        self._prune_backups(cap)
        return len(excess)

    def _prune_backups(self, cap: int) -> None:
        paths = self._backup_paths()
        keep = max(cap, 1)
        for path in paths[: max(0, len(paths) - keep)]:
            path.unlink(missing_ok=True)


def _render_note(point: RecoveryPoint) -> str:
    snap = point.state_snapshot
    lines = [
        f"# Recovery Point {point.id}",
        "",
        f"- **Created**: {point.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"- **Task**: {point.task_id or '-'}",
        f"- **Reason**: {point.reason}",
        f"- **Pipeline status**: {snap.status.value}",
        f"- **Progress**: {snap.completed_tasks}/{snap.total_tasks} completed, "
        f"{snap.failed_tasks} failed",
        f"- **Retries**: {snap.retry_info.total_retries} total",
        "",
        "## Restore",
        "",
        "```bash",
        f"taskwarden recover restore {point.id}",
        "```",
        "",
    ]
    return "\n".join(lines)
