"""Status aggregation, dashboards and timestamped reports.

The Reporter gathers everything an operator needs in one place:

- Resource and connectivity snapshots
- Execution state summary (progress, current task, retries, quality)
- Recent findings, execution log tail and alerts

It renders that as Markdown for the dashboard file, and writes
timestamped health and recovery reports to the reports directory.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..config import TaskwardenConfig
from ..health.models import Finding, FindingKind, HealthCheckResult
from ..health.probes import ConnectivitySnapshot, SystemSnapshot, connectivity_snapshot, system_snapshot
from ..state import ExecutionState, StateError, StateStore
from ..utils.files import atomic_write_text, tail_lines
from ..utils.timing import format_duration, seconds_since
from .alerts import AlertHistory

logger = logging.getLogger(__name__)

REPORT_TIME_FORMAT = "%Y%m%d_%H%M%S_%f"
HEALTH_REPORT_PREFIX = "health_report_"
RECOVERY_REPORT_PREFIX = "recovery_report_"

RECOMMENDATIONS: dict[FindingKind, str] = {
    FindingKind.TASK_STALLED: (
        "The current task exceeded the timeout threshold and will be retried automatically. "
        "If it keeps stalling, run 'taskwarden recover continue'."
    ),
    FindingKind.STATE_STALE: (
        "The state document has not been updated recently. Check that the agent is still running."
    ),
    FindingKind.ERROR_RATE_HIGH: (
        "Many transient API errors were logged. Consider pausing so rate limits can reset."
    ),
    FindingKind.NETWORK_DOWN: "Check network connectivity and DNS.",
    FindingKind.AGENT_API_UNREACHABLE: "Check the agent API endpoint status and credentials.",
    FindingKind.RESOURCE_PRESSURE: "Free disk space or memory, or reduce concurrent load.",
    FindingKind.PROGRESS_SLOW: "Progress is slow. Review the task breakdown.",
    FindingKind.FATAL_PATTERN: (
        "A fatal error was logged. Inspect the error log, fix the cause, then run "
        "'taskwarden recover continue'."
    ),
    FindingKind.STATE_MISSING: "Run 'taskwarden state init' to create the execution state.",
    FindingKind.STATE_CORRUPT: "Run 'taskwarden recover smart' to restore the newest recovery point.",
    FindingKind.CHECK_FAILED: "A health check could not run. See the supervisor log.",
}


@dataclass
class StatusReport:
    """Snapshot of pipeline health for dashboards and reports."""

    generated_at: datetime
    state: ExecutionState | None = None
    state_error: str | None = None
    system: SystemSnapshot | None = None
    connectivity: ConnectivitySnapshot | None = None
    findings: list[Finding] = field(default_factory=list)
    log_tail: list[str] = field(default_factory=list)
    recent_alerts: list[str] = field(default_factory=list)
    alert_count: int = 0

    @property
    def elapsed_seconds(self) -> float | None:
        if self.state is None or self.state.started_at is None:
            return None
        return seconds_since(self.state.started_at, self.generated_at)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "generated_at": self.generated_at.isoformat(),
            "state": self.state.model_dump(mode="json") if self.state else None,
            "state_error": self.state_error,
            "progress_percent": self.state.progress_percent if self.state else None,
            "elapsed_seconds": self.elapsed_seconds,
            "system": self.system.to_dict() if self.system else None,
            "connectivity": self.connectivity.to_dict() if self.connectivity else None,
            "findings": [f.to_dict() for f in self.findings],
            "log_tail": self.log_tail,
            "recent_alerts": self.recent_alerts,
            "alert_count": self.alert_count,
        }

    def to_markdown(self) -> str:
        """Render as a Markdown dashboard."""
        lines = [
            "# Execution Monitor Dashboard",
            "",
            f"**Updated**: {self.generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            "## System",
            "",
        ]

        if self.system:
            lines.extend(
                [
                    f"- **Disk**: {self.system.disk_percent:.1f}%",
                    f"- **Memory**: {self.system.memory_percent:.1f}%",
                    f"- **Load**: {self.system.load_1m:.2f} "
                    f"({self.system.load_per_core:.2f} per core, {self.system.cpu_count} cores)",
                ]
            )
        else:
            lines.append("- Resource snapshot unavailable")

        lines.extend(["", "## Network", ""])
        if self.connectivity:
            lines.append(_probe_line("Network", self.connectivity.network_target, self.connectivity.network_error))
            lines.append(_probe_line("Agent API", self.connectivity.api_target, self.connectivity.api_error))
        else:
            lines.append("- Not probed")

        lines.extend(["", "## Tasks", ""])
        lines.extend(_state_lines(self.state, self.state_error, self.elapsed_seconds))

        if self.state and self.state.quality_metrics:
            lines.extend(["", "## Quality", ""])
            for key, value in self.state.quality_metrics.model_dump(exclude_none=True).items():
                lines.append(f"- **{key}**: {value}")

        lines.extend(["", "## Findings", ""])
        if self.findings:
            lines.extend(f"- {f.format()}" for f in self.findings)
        else:
            lines.append("- ✅ No anomalies detected")

        lines.extend(["", "## Recent Execution Log", "", "```"])
        lines.extend(self.log_tail or ["(empty)"])
        lines.append("```")

        lines.extend(["", "## Recent Alerts", ""])
        lines.extend(self.recent_alerts or ["- None"])
        lines.append(f"\nTotal alerts recorded: {self.alert_count}")

        lines.extend(
            [
                "",
                "## Quick Actions",
                "",
                "- `taskwarden health check` - run a health check now",
                "- `taskwarden retry stats` - show retry counters",
                "- `taskwarden recover list` - list recovery points",
                "- `taskwarden recover smart` - repair the state document",
                "",
            ]
        )
        return "\n".join(lines)


def _probe_line(label: str, target: str, error: str | None) -> str:
    if error is None:
        return f"- **{label}** ({target}): ✅ reachable"
    return f"- **{label}** ({target}): ❌ {error}"


def _state_lines(
    state: ExecutionState | None,
    state_error: str | None,
    elapsed: float | None,
) -> list[str]:
    if state is None:
        return [f"- State unavailable: {state_error or 'not initialized'}"]

    lines = [
        f"- **Status**: {state.status.value}",
        f"- **Progress**: {state.progress_percent}% "
        f"({state.completed_tasks}/{state.total_tasks} completed, {state.failed_tasks} failed)",
        f"- **Current task**: {state.current_task_id or '-'}",
        f"- **Retries**: {state.retry_info.total_retries} total",
    ]
    for task_id, count in sorted(state.retry_info.per_task_retries.items()):
        lines.append(f"  - {task_id}: {count}")
    if elapsed is not None:
        lines.append(f"- **Elapsed**: {format_duration(elapsed)}")
    return lines


def _state_summary(state: ExecutionState | None) -> list[str]:
    if state is None:
        return ["- (no state)"]
    return [
        f"- Status: {state.status.value}",
        f"- Current task: {state.current_task_id or '-'}",
        f"- Completed: {state.completed_tasks}/{state.total_tasks}",
        f"- Failed: {state.failed_tasks}",
        f"- Retries: {state.retry_info.total_retries}",
    ]


@dataclass
class CleanupResult:
    """What a cleanup pass removed."""

    log_rotated: bool = False
    reports_removed: int = 0
    alerts_removed: int = 0


class Reporter:
    """Builds status reports and writes dashboards and report files."""

    def __init__(
        self,
        config: TaskwardenConfig,
        store: StateStore,
        alerts: AlertHistory | None = None,
        system_probe: Callable[[], SystemSnapshot] | None = None,
        connectivity_probe: Callable[[], ConnectivitySnapshot] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.store = store
        self.alerts = alerts or AlertHistory(
            config.workspace.alert_history_path, config.monitor.alert_cooldown
        )
        self._system_probe = system_probe or (lambda: system_snapshot(config.workspace.root_path))
        self._connectivity_probe = connectivity_probe or (
            lambda: connectivity_snapshot(
                config.health.network_probe_host,
                config.health.network_probe_port,
                config.health.agent_api_url,
                config.health.probe_timeout,
            )
        )
        self._clock = clock

    # =========================================================================
    # Status aggregation
    # =========================================================================

    def build_report(
        self,
        findings: Sequence[Finding] | None = None,
        system: SystemSnapshot | None = None,
        connectivity: ConnectivitySnapshot | None = None,
        probe: bool = True,
        probe_network: bool = True,
    ) -> StatusReport:
        """Aggregate a status report.

        Snapshots not passed in are sampled when ``probe`` is True; the
        connectivity probe also needs ``probe_network``. A probe that fails
        is logged and left out of the report.
        """
        state: ExecutionState | None = None
        state_error: str | None = None
        try:
            state = self.store.read()
        except StateError as e:
            state_error = str(e)

        if system is None and probe:
            try:
                system = self._system_probe()
            except Exception as e:
                logger.warning(f"Resource snapshot failed: {e}")

        if connectivity is None and probe and probe_network:
            try:
                connectivity = self._connectivity_probe()
            except Exception as e:
                logger.warning(f"Connectivity snapshot failed: {e}")

        workspace = self.config.workspace
        return StatusReport(
            generated_at=self._clock(),
            state=state,
            state_error=state_error,
            system=system,
            connectivity=connectivity,
            findings=list(findings or []),
            log_tail=tail_lines(workspace.execution_log_path, self.config.monitor.log_tail_lines),
            recent_alerts=self.alerts.tail(5),
            alert_count=self.alerts.count(),
        )

    def render_markdown(self, report: StatusReport) -> str:
        return report.to_markdown()

    def write_dashboard(self, report: StatusReport | None = None) -> Path:
        """Regenerate the dashboard file atomically."""
        report = report or self.build_report()
        path = self.config.workspace.dashboard_path
        atomic_write_text(path, self.render_markdown(report))
        logger.debug("Dashboard written to %s", path)
        return path

    # =========================================================================
    # Timestamped reports
    # =========================================================================

    def _report_path(self, prefix: str) -> Path:
        stamp = self._clock().strftime(REPORT_TIME_FORMAT)
        return self.config.workspace.reports_path / f"{prefix}{stamp}.md"

    def write_health_report(
        self,
        result: HealthCheckResult,
        system: SystemSnapshot | None = None,
        connectivity: ConnectivitySnapshot | None = None,
    ) -> Path:
        """Write a timestamped health report with recommendations."""
        report = self.build_report(result.findings, system, connectivity, probe=False)

        lines = [
            "# Health Check Report",
            "",
            f"**Checked**: {result.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
            f"**Status**: {'✅ Healthy' if result.healthy else '⚠️ Issues detected'}",
            "",
            "## Findings",
            "",
        ]
        if result.findings:
            lines.extend(f"- {f.format()}" for f in result.findings)
        else:
            lines.append("- No anomalies detected")

        lines.extend(["", "## Execution State", ""])
        lines.extend(_state_lines(report.state, report.state_error, report.elapsed_seconds))

        if system:
            lines.extend(
                [
                    "",
                    "## Resources",
                    "",
                    f"- Disk: {system.disk_percent:.1f}%",
                    f"- Memory: {system.memory_percent:.1f}%",
                    f"- Load per core: {system.load_per_core:.2f}",
                ]
            )

        if connectivity:
            lines.extend(
                [
                    "",
                    "## Connectivity",
                    "",
                    _probe_line("Network", connectivity.network_target, connectivity.network_error),
                    _probe_line("Agent API", connectivity.api_target, connectivity.api_error),
                ]
            )

        lines.extend(["", "## Recommendations", ""])
        kinds = list(dict.fromkeys(f.kind for f in result.findings))
        if kinds:
            lines.extend(f"- {RECOMMENDATIONS[kind]}" for kind in kinds)
        else:
            lines.append("- No action needed")
        lines.append("")

        path = self._report_path(HEALTH_REPORT_PREFIX)
        atomic_write_text(path, "\n".join(lines))
        logger.info("Health report written to %s", path)
        return path

    def write_recovery_report(
        self,
        kind: str,
        before: ExecutionState | None,
        after: ExecutionState | None,
        steps: Sequence[str],
        next_instruction: str | None = None,
    ) -> Path:
        """Write a timestamped recovery report.

        Args:
            kind: Recovery type (smart, continuation, manual, auto).
            before: State before recovery, if it was readable.
            after: State after recovery.
            steps: Actions performed, in order.
            next_instruction: Instruction to give the agent next.
        """
        lines = [
            f"# Recovery Report ({kind})",
            "",
            f"**Performed**: {self._clock().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            "## Steps",
            "",
        ]
        lines.extend(f"{i}. {step}" for i, step in enumerate(steps, 1))
        if not steps:
            lines.append("- No changes were needed")

        lines.extend(["", "## State Before", ""])
        lines.extend(_state_summary(before))
        lines.extend(["", "## State After", ""])
        lines.extend(_state_summary(after))

        if next_instruction:
            lines.extend(["", "## Next Step", "", "```", next_instruction, "```"])
        lines.append("")

        path = self._report_path(f"{RECOVERY_REPORT_PREFIX}{kind}_")
        atomic_write_text(path, "\n".join(lines))
        logger.info("Recovery report written to %s", path)
        return path

    def list_reports(self, prefix: str = "") -> list[Path]:
        """Report files, newest first."""
        reports_dir = self.config.workspace.reports_path
        if not reports_dir.exists():
            return []
        return sorted(reports_dir.glob(f"{prefix}*.md"), reverse=True)

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def cleanup(self) -> CleanupResult:
        """Rotate the supervisor log, drop old reports and trim alert history."""
        result = CleanupResult()
        monitor = self.config.monitor
        workspace = self.config.workspace

        log_path = workspace.log_path
        if log_path.exists() and log_path.stat().st_size > monitor.log_max_bytes:
            log_path.replace(log_path.with_name(log_path.name + ".old"))
            result.log_rotated = True
            logger.info("Rotated supervisor log %s", log_path)

        cutoff = (self._clock() - timedelta(days=monitor.report_retention_days)).timestamp()
        for path in self.list_reports():
            if not path.name.startswith((HEALTH_REPORT_PREFIX, RECOVERY_REPORT_PREFIX)):
                continue
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                result.reports_removed += 1

        result.alerts_removed = self.alerts.rotate(
            monitor.alert_history_max_lines, monitor.alert_history_keep
        )

        logger.info(
            "Cleanup: log_rotated=%s reports_removed=%d alerts_removed=%d",
            result.log_rotated,
            result.reports_removed,
            result.alerts_removed,
        )
        return result
