"""Periodic health monitoring.

Each cycle inspects the state document, the error log, host resources
and connectivity. Checks run independently: an exception inside one
becomes a CHECK_FAILED finding and the loop carries on.

High/critical findings that name a task are forwarded as synthetic
failures (stalls as TIMEOUT, anything else as UNKNOWN_ERROR), at most
once per task per cycle. Fatal log patterns and state corruption are
never forwarded; they are escalated to an operator instead.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from datetime import datetime

from ..config import TaskwardenConfig
from ..recovery.classifier import ErrorKind, classify, is_transient
from ..recovery.points import RecoveryPointManager
from ..reports.alerts import MANUAL_RECOVERY_OPTIONS, AlertHistory
from ..reports.reporter import Reporter
from ..state import (
    CorruptStateError,
    ExecutionState,
    PipelineStatus,
    StateError,
    StateNotFoundError,
    StateStore,
    TaskStatus,
)
from ..utils.files import tail_lines
from ..utils.timing import Ticker, format_duration, seconds_since
from .models import Finding, FindingKind, HealthCheckResult, Severity
from .probes import ConnectivitySnapshot, SystemSnapshot, connectivity_snapshot, system_snapshot

logger = logging.getLogger(__name__)

FailureHandler = Callable[[str, ErrorKind, str], None]

_TIMESTAMP_RE = re.compile(r"(\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2})")

# Error log lines read for timestamped entries
_ERROR_LOG_SCAN_LINES = 1000

_FORWARD_KINDS = {
    FindingKind.TASK_STALLED: ErrorKind.TIMEOUT,
    FindingKind.STATE_STALE: ErrorKind.TIMEOUT,
}

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


def _line_timestamp(line: str) -> datetime | None:
    match = _TIMESTAMP_RE.search(line)
    if not match:
        return None
    try:
        return datetime.fromisoformat(match.group(1).replace(" ", "T"))
    except ValueError:
        return None


class HealthMonitor:
    """Detects stalls and anomalies independent of explicit failures."""

    def __init__(
        self,
        config: TaskwardenConfig,
        store: StateStore,
        reporter: Reporter | None = None,
        points: RecoveryPointManager | None = None,
        alerts: AlertHistory | None = None,
        on_failure: FailureHandler | None = None,
        system_probe: Callable[[], SystemSnapshot] | None = None,
        connectivity_probe: Callable[[], ConnectivitySnapshot] | None = None,
        clock: Callable[[], datetime] = datetime.now,
        check_connectivity: bool = True,
    ):
        self.config = config
        self.store = store
        self.reporter = reporter
        self.points = points
        self.alerts = alerts if alerts is not None else (reporter.alerts if reporter else None)
        self.on_failure = on_failure
        self.check_connectivity = check_connectivity
        self.interval = config.health.interval

        health = config.health
        self._system_probe = system_probe or (lambda: system_snapshot(config.workspace.root_path))
        self._connectivity_probe = connectivity_probe or (
            lambda: connectivity_snapshot(
                health.network_probe_host,
                health.network_probe_port,
                health.agent_api_url,
                health.probe_timeout,
            )
        )
        self._clock = clock
        self._fatal_patterns = [re.compile(p, re.IGNORECASE) for p in health.fatal_patterns]
        self._seen_fatal_lines: set[str] = set()

        self.last_system: SystemSnapshot | None = None
        self.last_connectivity: ConnectivitySnapshot | None = None
        self.last_result: HealthCheckResult | None = None

    # =========================================================================
    # Checks
    # =========================================================================

    def check(self) -> HealthCheckResult:
        """Run every check once and collect the findings."""
        now = self._clock()
        result = HealthCheckResult(timestamp=now)

        state: ExecutionState | None = None
        try:
            state = self.store.read()
        except StateNotFoundError as e:
            result.findings.append(Finding(FindingKind.STATE_MISSING, Severity.MEDIUM, str(e)))
        except CorruptStateError as e:
            result.findings.append(Finding(FindingKind.STATE_CORRUPT, Severity.CRITICAL, str(e)))
        except Exception as e:
            result.findings.append(
                Finding(FindingKind.CHECK_FAILED, Severity.LOW, f"state check failed: {e}")
            )

        checks: list[tuple[str, Callable[[ExecutionState | None, datetime], list[Finding]]]] = [
            ("task progress", self._check_task_stalled),
            ("state freshness", self._check_state_stale),
            ("progress rate", self._check_progress_rate),
            ("error rate", self._check_error_rate),
            ("fatal patterns", self._check_fatal_patterns),
            ("resources", self._check_resources),
        ]
        if self.check_connectivity:
            checks.append(("connectivity", self._check_connectivity))

        for name, check in checks:
            try:
                result.findings.extend(check(state, now))
            except Exception as e:
                logger.warning(f"Health check '{name}' failed: {e}")
                result.findings.append(
                    Finding(FindingKind.CHECK_FAILED, Severity.LOW, f"{name} check failed: {e}")
                )

        self.last_result = result
        return result

    def _check_task_stalled(self, state: ExecutionState | None, now: datetime) -> list[Finding]:
        if state is None:
            return []
        task = state.current_task
        if task is None or task.status != TaskStatus.IN_PROGRESS or task.started_at is None:
            return []

        elapsed = seconds_since(task.started_at, now)
        threshold = self.config.health.task_timeout_threshold
        if elapsed <= threshold:
            return []
        return [
            Finding(
                FindingKind.TASK_STALLED,
                Severity.HIGH,
                f"Task {task.id} has been in progress for {format_duration(elapsed)} "
                f"(threshold {format_duration(threshold)})",
                task_id=task.id,
            )
        ]

    def _check_state_stale(self, state: ExecutionState | None, now: datetime) -> list[Finding]:
        if state is None or state.status != PipelineStatus.RUNNING:
            return []

        age = seconds_since(state.last_updated_at, now)
        threshold = self.config.health.task_timeout_threshold
        if age <= threshold:
            return []

        # Only a task still in progress can be retried for staleness
        task = state.current_task
        task_id = task.id if task is not None and task.status == TaskStatus.IN_PROGRESS else None
        return [
            Finding(
                FindingKind.STATE_STALE,
                Severity.HIGH,
                f"State document not updated for {format_duration(age)}",
                task_id=task_id,
            )
        ]

    def _check_progress_rate(self, state: ExecutionState | None, now: datetime) -> list[Finding]:
        health = self.config.health
        if state is None or state.started_at is None or state.status == PipelineStatus.COMPLETED:
            return []

        elapsed = seconds_since(state.started_at, now)
        if elapsed <= health.slow_progress_after or state.completion_ratio >= health.slow_progress_ratio:
            return []
        return [
            Finding(
                FindingKind.PROGRESS_SLOW,
                Severity.LOW,
                f"Only {state.progress_percent}% complete after {format_duration(elapsed)}",
            )
        ]

    def _recent_error_lines(self, now: datetime) -> list[str]:
        """Error log lines inside the detection window.

        Timestamped lines count when inside ``error_window_seconds``;
        untimestamped lines count when among the last ``error_window_lines``.
        """
        health = self.config.health
        lines = tail_lines(
            self.config.workspace.error_log_path,
            max(health.error_window_lines, _ERROR_LOG_SCAN_LINES),
        )
        untimed_start = len(lines) - health.error_window_lines

        recent = []
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            stamp = _line_timestamp(line)
            if stamp is not None:
                if seconds_since(stamp, now) <= health.error_window_seconds:
                    recent.append(line)
            elif index >= untimed_start:
                recent.append(line)
        return recent

    def _check_error_rate(self, state: ExecutionState | None, now: datetime) -> list[Finding]:
        transient = [line for line in self._recent_error_lines(now) if is_transient(classify(line))]
        threshold = self.config.health.api_error_threshold
        if len(transient) <= threshold:
            return []
        return [
            Finding(
                FindingKind.ERROR_RATE_HIGH,
                Severity.MEDIUM,
                f"{len(transient)} transient errors in the recent error log (threshold {threshold})",
            )
        ]

    def _check_fatal_patterns(self, state: ExecutionState | None, now: datetime) -> list[Finding]:
        task_id = state.current_task_id if state else None
        findings = []
        for line in self._recent_error_lines(now):
            if any(p.search(line) for p in self._fatal_patterns):
                findings.append(
                    Finding(
                        FindingKind.FATAL_PATTERN,
                        Severity.CRITICAL,
                        f"Fatal error logged: {line.strip()[:200]}",
                        task_id=task_id,
                    )
                )
        return findings

    def _check_resources(self, state: ExecutionState | None, now: datetime) -> list[Finding]:
        health = self.config.health
        snapshot = self._system_probe()
        self.last_system = snapshot

        findings = []
        if snapshot.disk_percent > health.disk_threshold:
            findings.append(
                Finding(
                    FindingKind.RESOURCE_PRESSURE,
                    Severity.MEDIUM,
                    f"Disk usage {snapshot.disk_percent:.1f}% exceeds {health.disk_threshold:.0f}%",
                )
            )
        if snapshot.memory_percent > health.memory_threshold:
            findings.append(
                Finding(
                    FindingKind.RESOURCE_PRESSURE,
                    Severity.MEDIUM,
                    f"Memory usage {snapshot.memory_percent:.1f}% exceeds {health.memory_threshold:.0f}%",
                )
            )
        if snapshot.load_per_core > health.load_per_core_threshold:
            findings.append(
                Finding(
                    FindingKind.RESOURCE_PRESSURE,
                    Severity.MEDIUM,
                    f"Load {snapshot.load_per_core:.2f} per core exceeds "
                    f"{health.load_per_core_threshold:.2f}",
                )
            )
        return findings

    def _check_connectivity(self, state: ExecutionState | None, now: datetime) -> list[Finding]:
        snapshot = self._connectivity_probe()
        self.last_connectivity = snapshot

        findings = []
        if not snapshot.network_ok:
            findings.append(
                Finding(FindingKind.NETWORK_DOWN, Severity.MEDIUM, snapshot.network_error or "")
            )
        if not snapshot.api_ok:
            findings.append(
                Finding(FindingKind.AGENT_API_UNREACHABLE, Severity.MEDIUM, snapshot.api_error or "")
            )
        return findings

    # =========================================================================
    # Forwarding and escalation
    # =========================================================================

    def forwardable(self, result: HealthCheckResult) -> list[tuple[str, ErrorKind, str]]:
        """Synthetic failures to hand to the retry scheduler, one per task."""
        forwarded: dict[str, tuple[str, ErrorKind, str]] = {}
        for finding in result.findings:
            if not finding.forwardable or finding.task_id in forwarded:
                continue
            kind = _FORWARD_KINDS.get(finding.kind, ErrorKind.UNKNOWN_ERROR)
            forwarded[finding.task_id] = (finding.task_id, kind, finding.message)
        return list(forwarded.values())

    def _record(self, result: HealthCheckResult) -> None:
        for finding in result.findings:
            logger.log(_LOG_LEVELS[finding.severity], finding.format())

        for finding in result.findings:
            if finding.kind == FindingKind.FATAL_PATTERN:
                self._escalate_fatal(finding)
            elif finding.severity.rank >= Severity.HIGH.rank and self.alerts is not None:
                self.alerts.append(finding.severity, finding.kind.value, finding.message)

    def _escalate_fatal(self, finding: Finding) -> None:
        if finding.message in self._seen_fatal_lines:
            return
        self._seen_fatal_lines.add(finding.message)

        if self.alerts is not None:
            self.alerts.append(
                Severity.CRITICAL,
                "Fatal error detected",
                finding.message,
                MANUAL_RECOVERY_OPTIONS,
            )
        if self.points is not None:
            try:
                self.points.create(finding.task_id, "fatal_pattern")
                self.points.prune()
            except StateError as e:
                logger.warning(f"Could not create recovery point for fatal error: {e}")

    # =========================================================================
    # Loop
    # =========================================================================

    def run_cycle(self) -> HealthCheckResult:
        """Check, record, forward and refresh the dashboard."""
        result = self.check()
        self._record(result)

        if self.on_failure is not None:
            for task_id, kind, message in self.forwardable(result):
                logger.info("Forwarding %s for task %s to retry", kind.value, task_id)
                try:
                    self.on_failure(task_id, kind, message)
                except Exception as e:
                    logger.error(f"Failure handler raised for {task_id}: {e}")

        if self.reporter is not None:
            try:
                report = self.reporter.build_report(
                    result.findings, self.last_system, self.last_connectivity, probe=False
                )
                self.reporter.write_dashboard(report)
            except OSError as e:
                logger.warning(f"Dashboard update failed: {e}")

        return result

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run cycles every ``interval`` seconds until *stop_event* is set."""
        ticker = Ticker(self.interval, stop_event)
        logger.info("Health monitor started (interval %.0fs)", self.interval)
        for _ in ticker:
            ticker.interval = self.interval
            try:
                self.run_cycle()
            except Exception as e:
                logger.exception(f"Health cycle failed: {e}")
        logger.info("Health monitor stopped")
