"""Health findings and probes.

The monitor loop lives in :mod:`taskwarden.health.monitor`.
"""

from .models import NEVER_FORWARDED, Finding, FindingKind, HealthCheckResult, Severity
from .probes import (
    ConnectivitySnapshot,
    SystemSnapshot,
    connectivity_snapshot,
    probe_http,
    probe_tcp,
    system_snapshot,
)

__all__ = [
    "Finding",
    "FindingKind",
    "HealthCheckResult",
    "Severity",
    "NEVER_FORWARDED",
    "SystemSnapshot",
    "ConnectivitySnapshot",
    "system_snapshot",
    "connectivity_snapshot",
    "probe_tcp",
    "probe_http",
]
