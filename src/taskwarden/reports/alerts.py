"""Durable alert history.

Alerts are appended one per line to an append-only Markdown file:

    - [2026-01-01 12:00:00] [HIGH] Retry refused: ... | Options: ...

Identical alerts within the cooldown window are suppressed. The file
is only truncated by an explicit :meth:`AlertHistory.rotate`.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path

from ..health.models import Severity
from ..utils.files import atomic_write_text, tail_lines

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Manual recovery options listed in every escalation
MANUAL_RECOVERY_OPTIONS = (
    "continue the task: taskwarden recover continue <task_id>",
    "restore a recovery point: taskwarden recover restore <point_id>",
    "re-verify artifacts: taskwarden recover verify <task_id>",
)

_ALERT_RE = re.compile(
    r"^- \[(?P<timestamp>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\] "
    r"\[(?P<level>[A-Z]+)\] (?P<body>.*)$"
)

# Lines scanned when checking the cooldown
_COOLDOWN_SCAN_LINES = 200


def format_alert_body(title: str, message: str, options: Sequence[str] | None = None) -> str:
    body = f"{title}: {' '.join(message.split())}"
    if options:
        body += " | Options: " + "; ".join(options)
    return body


class AlertHistory:
    """Append-only, timestamped alert log with a suppression cooldown."""

    def __init__(
        self,
        path: Path,
        cooldown: float = 300.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.path = Path(path)
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()

    def append(
        self,
        severity: Severity,
        title: str,
        message: str,
        options: Sequence[str] | None = None,
    ) -> bool:
        """Record an alert.

        Returns:
            True if written, False if an identical alert was recorded
            within the cooldown window.
        """
        body = format_alert_body(title, message, options)
        now = self._clock()

        with self._lock:
            if self._recently_sent(body, now):
                logger.debug("Suppressed repeated alert: %s", title)
                return False

            line = f"- [{now.strftime(TIMESTAMP_FORMAT)}] [{severity.value.upper()}] {body}\n"
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)

        log = logger.warning if severity.rank >= Severity.HIGH.rank else logger.info
        log("Alert [%s] %s: %s", severity.value, title, message)
        return True

    def _recently_sent(self, body: str, now: datetime) -> bool:
        if self.cooldown <= 0:
            return False
        window_start = now - timedelta(seconds=self.cooldown)
        for line in reversed(tail_lines(self.path, _COOLDOWN_SCAN_LINES)):
            match = _ALERT_RE.match(line)
            if not match or match.group("body") != body:
                continue
            sent_at = datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT)
            return sent_at >= window_start
        return False

    def tail(self, count: int = 5) -> list[str]:
        """Newest ``count`` alert lines, oldest first."""
        return tail_lines(self.path, count)

    def count(self) -> int:
        if not self.path.exists():
            return 0
        with self.path.open("r", encoding="utf-8", errors="replace") as f:
            return sum(1 for _ in f)

    def rotate(self, max_lines: int = 1000, keep: int = 500) -> int:
        """Keep only the newest ``keep`` lines once the file exceeds ``max_lines``.

        Returns:
            Number of lines removed.
        """
        with self._lock:
            total = self.count()
            if total <= max_lines:
                return 0
            kept = tail_lines(self.path, keep)
            atomic_write_text(self.path, "".join(line + "\n" for line in kept))

        removed = total - len(kept)
        logger.info("Rotated alert history: removed %d line(s)", removed)
        return removed
