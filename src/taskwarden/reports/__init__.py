"""Alerting, dashboards and timestamped reports."""

from .alerts import MANUAL_RECOVERY_OPTIONS, AlertHistory, format_alert_body
from .reporter import (
    RECOMMENDATIONS,
    CleanupResult,
    Reporter,
    StatusReport,
)

__all__ = [
    "AlertHistory",
    "MANUAL_RECOVERY_OPTIONS",
    "format_alert_body",
    "Reporter",
    "StatusReport",
    "CleanupResult",
    "RECOMMENDATIONS",
]
