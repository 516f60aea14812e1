"""Metrics time-series store with edge-triggered threshold alerts."""

from resilience_core.monitor.models import (
    Alert,
    AlertCondition,
    AlertListener,
    AlertSeverity,
    MetricKind,
    MetricPoint,
    MetricSnapshot,
    MetricSummary,
    MonitorConfig,
)
from resilience_core.monitor.monitor import (
    SYSTEM_CPU_METRIC,
    SYSTEM_MEMORY_METRIC,
    SYSTEM_UPTIME_METRIC,
    Monitor,
    run_periodic_loop,
)

__all__ = [
    "SYSTEM_CPU_METRIC",
    "SYSTEM_MEMORY_METRIC",
    "SYSTEM_UPTIME_METRIC",
    "Alert",
    "AlertCondition",
    "AlertListener",
    "AlertSeverity",
    "MetricKind",
    "MetricPoint",
    "MetricSnapshot",
    "MetricSummary",
    "Monitor",
    "MonitorConfig",
    "run_periodic_loop",
]
