"""Unified configuration system for taskwarden.

Configuration is stored at ~/.taskwarden/config.toml and organized into sections.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (~/.taskwarden/config.toml, or $TASKWARDEN_CONFIG)
3. Defaults (lowest)

Sections:
    [workspace]  - Workspace root and artifact file names
    [retry]      - Retry ceilings and backoff
    [recovery]   - Recovery point retention and automatic restore
    [health]     - Health check thresholds and probe endpoints
    [agent]      - External agent command and hard timeout
    [monitor]    - Unified monitor loop, alerting and log rotation
    [ui]         - Console and logging settings

Example:
    from taskwarden.config import get_config

    config = get_config()
    print(config.retry.max_total_retries)
    print(config.workspace.state_path)
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".taskwarden"
DEFAULT_CONFIG_FILE = "config.toml"

# Singleton instance
_config: TaskwardenConfig | None = None


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class WorkspaceConfig:
    """Workspace layout.

    All file names are resolved relative to ``root``.

    Attributes:
        root: Directory the supervised pipeline runs in.
        state_file: Execution state document.
        recovery_dir: Directory holding recovery points.
        reports_dir: Directory for timestamped health/recovery reports.
        log_dir: Directory for the supervisor's own log file.
        error_log: Error log written by the agent (input).
        execution_log: Execution log written by the agent (input).
        alert_history: Append-only alert history.
        dashboard_file: Dashboard regenerated on every monitor cycle.
    """

    root: str = "."
    state_file: str = "EXECUTION_STATUS.json"
    recovery_dir: str = "RECOVERY_POINTS"
    reports_dir: str = "REPORTS"
    log_dir: str = "LOGS"
    error_log: str = "ERROR_REPORT.md"
    execution_log: str = "EXECUTION_LOG.md"
    alert_history: str = "ALERT_HISTORY.md"
    dashboard_file: str = "MONITOR_DASHBOARD.md"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkspaceConfig:
        """Create from dictionary."""
        defaults = cls()
        return cls(
            root=str(data.get("root", defaults.root)),
            state_file=data.get("state_file", defaults.state_file),
            recovery_dir=data.get("recovery_dir", defaults.recovery_dir),
            reports_dir=data.get("reports_dir", defaults.reports_dir),
            log_dir=data.get("log_dir", defaults.log_dir),
            error_log=data.get("error_log", defaults.error_log),
            execution_log=data.get("execution_log", defaults.execution_log),
            alert_history=data.get("alert_history", defaults.alert_history),
            dashboard_file=data.get("dashboard_file", defaults.dashboard_file),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "root": self.root,
            "state_file": self.state_file,
            "recovery_dir": self.recovery_dir,
            "reports_dir": self.reports_dir,
            "log_dir": self.log_dir,
            "error_log": self.error_log,
            "execution_log": self.execution_log,
            "alert_history": self.alert_history,
            "dashboard_file": self.dashboard_file,
        }

    @property
    def root_path(self) -> Path:
        return Path(self.root)

    @property
    def state_path(self) -> Path:
        return self.root_path / self.state_file

    @property
    def recovery_path(self) -> Path:
        return self.root_path / self.recovery_dir

    @property
    def reports_path(self) -> Path:
        return self.root_path / self.reports_dir

    @property
    def log_path(self) -> Path:
        return self.root_path / self.log_dir / "taskwarden.log"

    @property
    def error_log_path(self) -> Path:
        return self.root_path / self.error_log

    @property
    def execution_log_path(self) -> Path:
        return self.root_path / self.execution_log

    @property
    def alert_history_path(self) -> Path:
        return self.root_path / self.alert_history

    @property
    def dashboard_path(self) -> Path:
        return self.root_path / self.dashboard_file


@dataclass
class RetryConfig:
    """Retry policy settings.

    Attributes:
        max_total_retries: Global ceiling on automatic retries per pipeline.
        max_retry_per_task: Ceiling on automatic retries per task.
        base_delay: Backoff delay for the first retry, in seconds.
        max_delay: Backoff cap, in seconds.
    """

    max_total_retries: int = 10
    max_retry_per_task: int = 3
    base_delay: float = 30.0
    max_delay: float = 1800.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        """Create from dictionary."""
        return cls(
            max_total_retries=int(data.get("max_total_retries", 10)),
            max_retry_per_task=int(data.get("max_retry_per_task", 3)),
            base_delay=float(data.get("base_delay", 30.0)),
            max_delay=float(data.get("max_delay", 1800.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_total_retries": self.max_total_retries,
            "max_retry_per_task": self.max_retry_per_task,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
        }


@dataclass
class RecoveryConfig:
    """Recovery point settings.

    Attributes:
        max_points: Number of recovery points retained (oldest evicted first).
        checkpoint_on_task_events: Create a point when a task starts or completes.
        auto_restore_on_corruption: Restore the newest point when the state
            document is found corrupt by the supervisor.
    """

    max_points: int = 20
    checkpoint_on_task_events: bool = True
    auto_restore_on_corruption: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryConfig:
        """Create from dictionary."""
        return cls(
            max_points=int(data.get("max_points", 20)),
            checkpoint_on_task_events=data.get("checkpoint_on_task_events", True),
            auto_restore_on_corruption=data.get("auto_restore_on_corruption", True),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_points": self.max_points,
            "checkpoint_on_task_events": self.checkpoint_on_task_events,
            "auto_restore_on_corruption": self.auto_restore_on_corruption,
        }


DEFAULT_FATAL_PATTERNS = [
    r"segmentation\s*fault",
    r"core\s*dumped",
    r"permission\s*denied",
    r"(file|no\s*such\s*file)\s*(not\s*found|or\s*directory)",
    r"command\s*not\s*found",
]


@dataclass
class HealthConfig:
    """Health check settings.

    Attributes:
        interval: Seconds between health checks.
        task_timeout_threshold: Seconds before a running task counts as stalled.
        api_error_threshold: Transient errors tolerated inside the window.
        error_window_seconds: Window for timestamped error-log lines.
        error_window_lines: Window for error-log lines without timestamps.
        disk_threshold: Disk usage percent that counts as pressure.
        memory_threshold: Memory usage percent that counts as pressure.
        load_per_core_threshold: 1-minute load per core that counts as pressure.
        slow_progress_after: Seconds after pipeline start before slow progress is flagged.
        slow_progress_ratio: Completion ratio below which progress is slow.
        probe_timeout: Timeout for each connectivity probe, in seconds.
        network_probe_host: Host used for the general reachability probe.
        network_probe_port: Port used for the general reachability probe.
        agent_api_url: Endpoint of the agent's API.
        fatal_patterns: Regexes marking unrecoverable log lines.
    """

    interval: float = 60.0
    task_timeout_threshold: float = 1800.0
    api_error_threshold: int = 5
    error_window_seconds: float = 3600.0
    error_window_lines: int = 50
    disk_threshold: float = 90.0
    memory_threshold: float = 90.0
    load_per_core_threshold: float = 2.0
    slow_progress_after: float = 7200.0
    slow_progress_ratio: float = 0.2
    probe_timeout: float = 5.0
    network_probe_host: str = "www.google.com"
    network_probe_port: int = 443
    agent_api_url: str = "https://api.anthropic.com"
    fatal_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_FATAL_PATTERNS))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthConfig:
        """Create from dictionary."""
        return cls(
            interval=float(data.get("interval", 60.0)),
            task_timeout_threshold=float(data.get("task_timeout_threshold", 1800.0)),
            api_error_threshold=int(data.get("api_error_threshold", 5)),
            error_window_seconds=float(data.get("error_window_seconds", 3600.0)),
            error_window_lines=int(data.get("error_window_lines", 50)),
            disk_threshold=float(data.get("disk_threshold", 90.0)),
            memory_threshold=float(data.get("memory_threshold", 90.0)),
            load_per_core_threshold=float(data.get("load_per_core_threshold", 2.0)),
            slow_progress_after=float(data.get("slow_progress_after", 7200.0)),
            slow_progress_ratio=float(data.get("slow_progress_ratio", 0.2)),
            probe_timeout=float(data.get("probe_timeout", 5.0)),
            network_probe_host=data.get("network_probe_host", "www.google.com"),
            network_probe_port=int(data.get("network_probe_port", 443)),
            agent_api_url=data.get("agent_api_url", "https://api.anthropic.com"),
            fatal_patterns=list(data.get("fatal_patterns", DEFAULT_FATAL_PATTERNS)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "interval": self.interval,
            "task_timeout_threshold": self.task_timeout_threshold,
            "api_error_threshold": self.api_error_threshold,
            "error_window_seconds": self.error_window_seconds,
            "error_window_lines": self.error_window_lines,
            "disk_threshold": self.disk_threshold,
            "memory_threshold": self.memory_threshold,
            "load_per_core_threshold": self.load_per_core_threshold,
            "slow_progress_after": self.slow_progress_after,
            "slow_progress_ratio": self.slow_progress_ratio,
            "probe_timeout": self.probe_timeout,
            "network_probe_host": self.network_probe_host,
            "network_probe_port": self.network_probe_port,
            "agent_api_url": self.agent_api_url,
            "fatal_patterns": self.fatal_patterns,
        }


@dataclass
class AgentConfig:
    """External agent settings.

    Attributes:
        command: Command prefix; the instruction is appended as the last argument.
        timeout: Hard timeout for one invocation, in seconds.
    """

    command: list[str] = field(default_factory=lambda: ["claude", "-p"])
    timeout: float = 3600.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentConfig:
        """Create from dictionary."""
        command = data.get("command", ["claude", "-p"])
        if isinstance(command, str):
            command = shlex.split(command)
        return cls(
            command=list(command),
            timeout=float(data.get("timeout", 3600.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "command": self.command,
            "timeout": self.timeout,
        }


@dataclass
class MonitorConfig:
    """Unified monitor settings.

    Attributes:
        interval: Seconds between live view / daemon refreshes.
        alert_cooldown: Seconds during which an identical alert is suppressed.
        log_max_bytes: Size above which the supervisor log is rotated.
        alert_history_max_lines: Alert history length that triggers rotation.
        alert_history_keep: Newest alert lines kept on rotation.
        report_retention_days: Age after which timestamped reports are deleted.
        log_tail_lines: Execution log lines included in reports.
    """

    interval: float = 60.0
    alert_cooldown: float = 300.0
    log_max_bytes: int = 10 * 1024 * 1024
    alert_history_max_lines: int = 1000
    alert_history_keep: int = 500
    report_retention_days: int = 7
    log_tail_lines: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitorConfig:
        """Create from dictionary."""
        return cls(
            interval=float(data.get("interval", 60.0)),
            alert_cooldown=float(data.get("alert_cooldown", 300.0)),
            log_max_bytes=int(data.get("log_max_bytes", 10 * 1024 * 1024)),
            alert_history_max_lines=int(data.get("alert_history_max_lines", 1000)),
            alert_history_keep=int(data.get("alert_history_keep", 500)),
            report_retention_days=int(data.get("report_retention_days", 7)),
            log_tail_lines=int(data.get("log_tail_lines", 10)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "interval": self.interval,
            "alert_cooldown": self.alert_cooldown,
            "log_max_bytes": self.log_max_bytes,
            "alert_history_max_lines": self.alert_history_max_lines,
            "alert_history_keep": self.alert_history_keep,
            "report_retention_days": self.report_retention_days,
            "log_tail_lines": self.log_tail_lines,
        }


@dataclass
class UIConfig:
    """Console settings.

    Attributes:
        log_level: Logging level (debug, info, warning, error).
    """

    log_level: str = "info"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UIConfig:
        """Create from dictionary."""
        return cls(log_level=data.get("log_level", "info"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"log_level": self.log_level}


# =============================================================================
# Main Configuration Class
# =============================================================================


@dataclass
class TaskwardenConfig:
    """Main configuration container.

    Use get_config() to get the singleton instance.
    """

    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    ui: UIConfig = field(default_factory=UIConfig)

    # Metadata
    config_version: str = "1.0"
    config_path: Path | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskwardenConfig:
        """Create configuration from dictionary."""
        return cls(
            workspace=WorkspaceConfig.from_dict(data.get("workspace", {})),
            retry=RetryConfig.from_dict(data.get("retry", {})),
            recovery=RecoveryConfig.from_dict(data.get("recovery", {})),
            health=HealthConfig.from_dict(data.get("health", {})),
            agent=AgentConfig.from_dict(data.get("agent", {})),
            monitor=MonitorConfig.from_dict(data.get("monitor", {})),
            ui=UIConfig.from_dict(data.get("ui", {})),
            config_version=data.get("config", {}).get("version", "1.0"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "config": {
                "version": self.config_version,
            },
            "workspace": self.workspace.to_dict(),
            "retry": self.retry.to_dict(),
            "recovery": self.recovery.to_dict(),
            "health": self.health.to_dict(),
            "agent": self.agent.to_dict(),
            "monitor": self.monitor.to_dict(),
            "ui": self.ui.to_dict(),
        }

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if root := os.environ.get("TASKWARDEN_ROOT"):
            self.workspace.root = root
        if command := os.environ.get("TASKWARDEN_AGENT_COMMAND"):
            self.agent.command = shlex.split(command)
        if timeout := os.environ.get("TASKWARDEN_AGENT_TIMEOUT"):
            self.agent.timeout = float(timeout)
        if total := os.environ.get("TASKWARDEN_MAX_TOTAL_RETRIES"):
            self.retry.max_total_retries = int(total)
        if per_task := os.environ.get("TASKWARDEN_MAX_RETRY_PER_TASK"):
            self.retry.max_retry_per_task = int(per_task)
        if level := os.environ.get("TASKWARDEN_LOG_LEVEL"):
            self.ui.log_level = level

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key path.

        Example:
            config.get('retry.max_total_retries')  # Returns 10
        """
        obj: Any = self
        for part in key.split("."):
            if hasattr(obj, part):
                obj = getattr(obj, part)
            else:
                return default
        return obj

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value by dotted key path.

        Returns:
            True if set successfully, False otherwise.
        """
        parts = key.split(".")
        if len(parts) != 2:
            return False

        section_name, field_name = parts
        if not hasattr(self, section_name):
            return False

        section = getattr(self, section_name)
        if not hasattr(section, field_name):
            return False

        setattr(section, field_name, value)
        return True


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    if custom_path := os.environ.get("TASKWARDEN_CONFIG"):
        return Path(custom_path)
    return DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> TaskwardenConfig:
    """Load configuration from TOML file.

    A missing file yields defaults; an unreadable file is logged and
    also yields defaults. Environment overrides are applied last.
    """
    path = config_path or get_config_path()

    config = TaskwardenConfig()
    config.config_path = path

    if path.exists():
        try:
            try:
                import tomllib
            except ImportError:
                import tomli as tomllib  # type: ignore

            with open(path, "rb") as f:
                data = tomllib.load(f)

            config = TaskwardenConfig.from_dict(data)
            config.config_path = path
            config.last_modified = datetime.fromtimestamp(path.stat().st_mtime)

        except Exception as e:
            logger.error(f"Failed to load config from {path}: {e}")
            config = TaskwardenConfig()
            config.config_path = path

    config.apply_env_overrides()

    return config


def save_config(config: TaskwardenConfig, config_path: Path | None = None) -> bool:
    """Save configuration to TOML file.

    Returns:
        True if saved successfully, False otherwise.
    """
    import tomli_w

    path = config_path or config.config_path or get_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(config.to_dict(), f)
    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return False

    config.config_path = path
    config.last_modified = datetime.now()
    logger.info(f"Saved config to {path}")
    return True


def get_config() -> TaskwardenConfig:
    """Get the singleton configuration instance.

    Loads from file on first call, returns cached instance after.
    Use reload_config() to force reload.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> TaskwardenConfig:
    """Force reload configuration from file."""
    global _config
    _config = load_config()
    return _config


def reset_config() -> None:
    """Reset singleton to force reload on next access."""
    global _config
    _config = None


def format_config_for_display(config: TaskwardenConfig) -> str:
    """Format configuration for CLI display."""
    lines = []
    lines.append("Taskwarden Configuration")
    lines.append("=" * 50)
    lines.append("")

    if config.config_path:
        lines.append(f"Config file: {config.config_path}")
        if config.last_modified:
            lines.append(f"Last modified: {config.last_modified.strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append("")

    for section, values in config.to_dict().items():
        if section == "config":
            continue
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"  {key} = {value}")
        lines.append("")

    return "\n".join(lines).rstrip()
