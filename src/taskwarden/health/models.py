"""Health check findings."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Finding severity, ordered low to critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def icon(self) -> str:
        return _SEVERITY_ICON[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

_SEVERITY_ICON = {
    Severity.LOW: "ℹ️",
    Severity.MEDIUM: "⚠️",
    Severity.HIGH: "🔴",
    Severity.CRITICAL: "🚨",
}


class FindingKind(str, Enum):
    """Kinds of anomalies the health monitor reports."""

    TASK_STALLED = "TASK_STALLED"
    STATE_STALE = "STATE_STALE"
    ERROR_RATE_HIGH = "ERROR_RATE_HIGH"
    NETWORK_DOWN = "NETWORK_DOWN"
    AGENT_API_UNREACHABLE = "AGENT_API_UNREACHABLE"
    RESOURCE_PRESSURE = "RESOURCE_PRESSURE"
    PROGRESS_SLOW = "PROGRESS_SLOW"
    FATAL_PATTERN = "FATAL_PATTERN"
    STATE_MISSING = "STATE_MISSING"
    STATE_CORRUPT = "STATE_CORRUPT"
    CHECK_FAILED = "CHECK_FAILED"


# Findings that must never trigger an automatic retry
NEVER_FORWARDED = frozenset({FindingKind.FATAL_PATTERN, FindingKind.STATE_CORRUPT})


@dataclass
class Finding:
    """A single detected anomaly.

    Attributes:
        kind: What was detected.
        severity: How serious it is.
        message: Human-readable description.
        task_id: Task the finding concerns, if any.
    """

    kind: FindingKind
    severity: Severity
    message: str
    task_id: str | None = None

    @property
    def forwardable(self) -> bool:
        """High/critical findings naming a task, except the never-retried kinds."""
        return (
            self.task_id is not None
            and self.severity.rank >= Severity.HIGH.rank
            and self.kind not in NEVER_FORWARDED
        )

    def format(self) -> str:
        task = f" [{self.task_id}]" if self.task_id else ""
        return f"{self.severity.icon} {self.kind.value}{task}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "task_id": self.task_id,
        }


@dataclass
class HealthCheckResult:
    """Outcome of one health check cycle."""

    timestamp: datetime = field(default_factory=datetime.now)
    findings: list[Finding] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.findings

    @property
    def worst_severity(self) -> Severity | None:
        if not self.findings:
            return None
        return max((f.severity for f in self.findings), key=lambda s: s.rank)

    def of_kind(self, kind: FindingKind) -> list[Finding]:
        return [f for f in self.findings if f.kind == kind]

    def has(self, kind: FindingKind) -> bool:
        return any(f.kind == kind for f in self.findings)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "healthy": self.healthy,
            "findings": [f.to_dict() for f in self.findings],
        }
