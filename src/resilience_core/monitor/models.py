"""Metric, alert and configuration primitives for the monitor."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Protocol


class MetricKind(StrEnum):
    """Metric kinds understood by the monitor."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    RATE = "rate"


class AlertCondition(StrEnum):
    """Comparison applied between a metric's latest value and a threshold."""

    ABOVE = "above"
    BELOW = "below"
    EQUALS = "equals"

    def breached(self, value: float, threshold: float) -> bool:
        if self is AlertCondition.ABOVE:
            return value > threshold
        if self is AlertCondition.BELOW:
            return value < threshold
        return value == threshold


class AlertSeverity(StrEnum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class MetricPoint:
    """One recorded value."""

    timestamp: datetime
    value: float
    tags: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))


@dataclass(frozen=True)
class MetricSnapshot:
    """Read-only copy of a registered metric and its retained points."""

    name: str
    kind: MetricKind
    unit: str | None
    description: str | None
    points: tuple[MetricPoint, ...]


@dataclass(frozen=True)
class MetricSummary:
    """Aggregate over the points of one metric inside a trailing window."""

    min: float
    max: float
    avg: float
    current: float
    count: int


@dataclass(frozen=True)
class Alert:
    """Threshold alert on one metric.

    Alerts are edge-triggered: only transitions of ``triggered`` produce
    notifications. Every evaluation replaces the stored instance, so listeners
    always receive an immutable copy.
    """

    id: str
    name: str
    metric_name: str
    condition: AlertCondition
    threshold: float
    severity: AlertSeverity
    triggered: bool = False
    current_value: float | None = None
    triggered_at: datetime | None = None
    resolved_at: datetime | None = None


class AlertListener(Protocol):
    """Listener protocol for alert transitions."""

    async def on_alert_triggered(self, alert: Alert) -> None:
        """Handle an alert moving into the breached state."""

    async def on_alert_resolved(self, alert: Alert) -> None:
        """Handle an alert leaving the breached state."""


@dataclass(frozen=True, slots=True)
class MonitorConfig:
    """Monitor retention and scheduling configuration.

    Attributes:
        retention_hours: Points older than this are pruned.
        max_points: Upper bound of retained points per metric.
        prune_interval_seconds: Period of the background retention pass.
        alert_interval_seconds: Period of the background alert evaluation.
        system_interval_seconds: Period of process memory, CPU and uptime
            sampling.
    """

    retention_hours: float = 24.0
    max_points: int = 1440
    prune_interval_seconds: float = 60.0
    alert_interval_seconds: float = 30.0
    system_interval_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.retention_hours <= 0:
            raise ValueError("retention_hours must be > 0")
        if self.max_points < 1:
            raise ValueError("max_points must be >= 1")
        if self.prune_interval_seconds <= 0:
            raise ValueError("prune_interval_seconds must be > 0")
        if self.alert_interval_seconds <= 0:
            raise ValueError("alert_interval_seconds must be > 0")
        if self.system_interval_seconds <= 0:
            raise ValueError("system_interval_seconds must be > 0")
