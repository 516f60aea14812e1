from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

import psutil

from resilience_core.logging import (
    LogSink,
    get_component_logger,
    log_error,
    log_exception,
    log_info,
    log_warning,
)
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
from resilience_core.retry import build_interruptible_sleep

SYSTEM_MEMORY_METRIC = "system.memory.rss"
SYSTEM_CPU_METRIC = "system.cpu.usage"
SYSTEM_UPTIME_METRIC = "system.uptime"

_SYSTEM_METRICS: tuple[tuple[str, str, str], ...] = (
    (SYSTEM_MEMORY_METRIC, "bytes", "Resident memory of the host process"),
    (SYSTEM_CPU_METRIC, "percent", "CPU usage of the host process"),
    (SYSTEM_UPTIME_METRIC, "seconds", "Time since the monitor started"),
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _Metric:
    name: str
    kind: MetricKind
    unit: str | None
    description: str | None
    points: deque[MetricPoint]


async def run_periodic_loop(
    *,
    action: Callable[[], Awaitable[object]],
    stop_event: asyncio.Event,
    interval_seconds: float,
) -> None:
    """Run ``action`` on a fixed interval until shutdown is requested."""
    sleep = build_interruptible_sleep(stop_event)
    interval = max(interval_seconds, 0.01)
    while not stop_event.is_set():
        await sleep(interval)
        if stop_event.is_set():
            return
        await action()


class Monitor:
    """In-process time-series store with edge-triggered threshold alerts.

    Recording is synchronous and guarded by a thread lock so that call sites on
    any thread or task can record without awaiting. Misuse such as recording to
    an unknown metric logs a warning and is otherwise ignored.
    """

    def __init__(
        self,
        *,
        config: MonitorConfig | None = None,
        listeners: Sequence[AlertListener] | None = None,
        logger: LogSink | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Create an empty monitor.

        Args:
            config: Retention and scheduling configuration.
            listeners: Alert listeners notified on trigger and resolve.
            logger: Structured log sink. Defaults to a structlog logger bound to
                the ``monitor`` category.
            now_fn: Clock used to timestamp points and alert transitions.
        """
        self.config = MonitorConfig() if config is None else config
        self._listeners: list[AlertListener] = list(listeners or ())
        self._logger = (
            get_component_logger(__name__, "monitor") if logger is None else logger
        )
        self._now = now_fn
        self._started_at = now_fn()
        self._lock = threading.Lock()
        self._metrics: dict[str, _Metric] = {}
        self._alerts: dict[str, Alert] = {}
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._process = psutil.Process()

    def add_listener(self, listener: AlertListener) -> None:
        """Subscribe ``listener`` to alert notifications."""
        self._listeners.append(listener)

    def register_metric(
        self,
        name: str,
        kind: MetricKind,
        *,
        unit: str | None = None,
        description: str | None = None,
    ) -> bool:
        """Register a metric, returning ``False`` when the name already exists."""
        with self._lock:
            if name in self._metrics:
                registered = False
            else:
                self._metrics[name] = _Metric(
                    name=name,
                    kind=MetricKind(kind),
                    unit=unit,
                    description=description,
                    points=deque(maxlen=self.config.max_points),
                )
                registered = True
        if not registered:
            log_warning(self._logger, "monitor.metric.already_registered", metric=name)
        return registered

    def _append_locked(
        self,
        metric: _Metric,
        value: float,
        tags: Mapping[str, str] | None,
    ) -> None:
        metric.points.append(
            MetricPoint(timestamp=self._now(), value=value, tags=tags or {})
        )

    def record(
        self,
        name: str,
        value: float,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        """Append one point to metric ``name``."""
        try:
            number = float(value)
        except (TypeError, ValueError):
            log_warning(
                self._logger,
                "monitor.metric.invalid_value",
                metric=name,
                value=repr(value),
            )
            return
        with self._lock:
            metric = self._metrics.get(name)
            if metric is not None:
                self._append_locked(metric, number, tags)
        if metric is None:
            log_warning(self._logger, "monitor.metric.not_registered", metric=name)

    def increment_counter(
        self,
        name: str,
        delta: float = 1.0,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        """Record the last counter value plus ``delta``."""
        with self._lock:
            metric = self._metrics.get(name)
            is_counter = metric is not None and metric.kind == MetricKind.COUNTER
            if metric is not None and is_counter:
                last = metric.points[-1].value if metric.points else 0.0
                self._append_locked(metric, last + delta, tags)
        if not is_counter:
            log_warning(self._logger, "monitor.counter.not_found", metric=name)

    def record_duration(
        self,
        name: str,
        duration_ms: float,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        """Record a duration and mirror it into ``<name>.histogram`` if present."""
        self.record(name, duration_ms, tags)
        histogram_name = f"{name}.histogram"
        with self._lock:
            has_histogram = histogram_name in self._metrics
        if has_histogram:
            self.record(histogram_name, duration_ms, tags)

    def start_operation(
        self,
        name: str,
        tags: Mapping[str, str] | None = None,
    ) -> Callable[[], float]:
        """Start timing one unit of work.

        Returns a ``stop`` callable that records ``operation.<name>.duration`` in
        milliseconds, increments ``operation.<name>.count`` and returns the
        measured duration. Both metrics are registered on first use.
        """
        duration_name = f"operation.{name}.duration"
        count_name = f"operation.{name}.count"
        with self._lock:
            for metric_name, kind, unit in (
                (duration_name, MetricKind.HISTOGRAM, "ms"),
                (count_name, MetricKind.COUNTER, None),
            ):
                if metric_name not in self._metrics:
                    self._metrics[metric_name] = _Metric(
                        name=metric_name,
                        kind=kind,
                        unit=unit,
                        description=None,
                        points=deque(maxlen=self.config.max_points),
                    )
        start = time.monotonic()

        def _stop() -> float:
            duration_ms = (time.monotonic() - start) * 1000.0
            self.record_duration(duration_name, duration_ms, tags)
            self.increment_counter(count_name, 1.0, tags)
            return duration_ms

        return _stop

    def get_metric(self, name: str) -> MetricSnapshot | None:
        """Return a read-only copy of metric ``name``."""
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                return None
            return MetricSnapshot(
                name=metric.name,
                kind=metric.kind,
                unit=metric.unit,
                description=metric.description,
                points=tuple(metric.points),
            )

    def summary(self, name: str, window_minutes: float = 60) -> MetricSummary | None:
        """Summarize the points of ``name`` recorded inside the trailing window."""
        cutoff = self._now() - timedelta(minutes=window_minutes)
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                return None
            values = [p.value for p in metric.points if p.timestamp >= cutoff]
        if not values:
            return None
        return MetricSummary(
            min=min(values),
            max=max(values),
            avg=sum(values) / len(values),
            current=values[-1],
            count=len(values),
        )

    def register_alert(
        self,
        name: str,
        metric_name: str,
        condition: AlertCondition,
        threshold: float,
        severity: AlertSeverity,
    ) -> Alert:
        """Register a threshold alert evaluated by ``evaluate_alerts``."""
        alert = Alert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            name=name,
            metric_name=metric_name,
            condition=AlertCondition(condition),
            threshold=float(threshold),
            severity=AlertSeverity(severity),
        )
        with self._lock:
            self._alerts[alert.id] = alert
        log_info(
            self._logger,
            "monitor.alert.registered",
            alert=name,
            metric=metric_name,
            condition=str(alert.condition),
            threshold=alert.threshold,
        )
        return alert

    def active_alerts(self) -> list[Alert]:
        """Return alerts currently in the triggered state."""
        with self._lock:
            return [alert for alert in self._alerts.values() if alert.triggered]

    async def evaluate_alerts(self) -> list[Alert]:
        """Evaluate every alert once and notify listeners of transitions.

        Returns:
            The alerts whose ``triggered`` flag changed in this pass.
        """
        now = self._now()
        transitions: list[Alert] = []
        with self._lock:
            for alert_id, alert in list(self._alerts.items()):
                metric = self._metrics.get(alert.metric_name)
                if metric is None or not metric.points:
                    continue
                value = metric.points[-1].value
                breached = alert.condition.breached(value, alert.threshold)
                if breached and not alert.triggered:
                    updated = replace(
                        alert,
                        triggered=True,
                        current_value=value,
                        triggered_at=now,
                        resolved_at=None,
                    )
                    transitions.append(updated)
                elif not breached and alert.triggered:
                    updated = replace(
                        alert, triggered=False, current_value=value, resolved_at=now
                    )
                    transitions.append(updated)
                else:
                    updated = replace(alert, current_value=value)
                self._alerts[alert_id] = updated

        for alert in transitions:
            if alert.triggered:
                log_error(
                    self._logger,
                    "monitor.alert.triggered",
                    alert=alert.name,
                    metric=alert.metric_name,
                    condition=str(alert.condition),
                    threshold=alert.threshold,
                    current_value=alert.current_value,
                    severity=str(alert.severity),
                )
                await self._emit("on_alert_triggered", alert)
            else:
                triggered_at = alert.triggered_at or now
                log_info(
                    self._logger,
                    "monitor.alert.resolved",
                    alert=alert.name,
                    metric=alert.metric_name,
                    current_value=alert.current_value,
                    duration_seconds=(now - triggered_at).total_seconds(),
                )
                await self._emit("on_alert_resolved", alert)
        return transitions

    async def _emit(self, hook: str, alert: Alert) -> None:
        for listener in tuple(self._listeners):
            try:
                await getattr(listener, hook)(alert)
            except Exception:
                log_exception(
                    self._logger,
                    "monitor.listener.failed",
                    hook=hook,
                    alert=alert.name,
                )

    def prune_expired(self) -> int:
        """Drop points older than the retention window across all metrics."""
        cutoff = self._now() - timedelta(hours=self.config.retention_hours)
        removed = 0
        with self._lock:
            for metric in self._metrics.values():
                while metric.points and metric.points[0].timestamp < cutoff:
                    metric.points.popleft()
                    removed += 1
        return removed

    def metrics_report(self) -> dict[str, object]:
        """Return uptime, per-metric hourly summaries and alert counts."""
        with self._lock:
            metrics = [(m.name, m.kind, m.unit) for m in self._metrics.values()]
            total_alerts = len(self._alerts)
        report: dict[str, object] = {}
        for name, kind, unit in metrics:
            summary = self.summary(name, 60)
            if summary is None:
                continue
            report[name] = {
                "min": summary.min,
                "max": summary.max,
                "avg": summary.avg,
                "current": summary.current,
                "count": summary.count,
                "kind": str(kind),
                "unit": unit,
            }
        return {
            "uptime_seconds": int(self.uptime_seconds()),
            "metrics": report,
            "alerts": {"active": len(self.active_alerts()), "total": total_alerts},
        }

    def uptime_seconds(self) -> float:
        return (self._now() - self._started_at).total_seconds()

    def collect_system_metrics(self) -> None:
        """Sample process memory, CPU usage and uptime into ``system.*`` gauges.

        The gauges are registered on first use. CPU usage is measured since the
        previous sample, so the first sample reads ``0.0``.
        """
        with self._lock:
            missing = [
                spec for spec in _SYSTEM_METRICS if spec[0] not in self._metrics
            ]
        for name, unit, description in missing:
            self.register_metric(
                name, MetricKind.GAUGE, unit=unit, description=description
            )
        with self._process.oneshot():
            rss = self._process.memory_info().rss
            cpu = self._process.cpu_percent(interval=None)
        self.record(SYSTEM_MEMORY_METRIC, rss)
        self.record(SYSTEM_CPU_METRIC, cpu)
        self.record(SYSTEM_UPTIME_METRIC, self.uptime_seconds())

    async def _system_pass(self) -> None:
        try:
            self.collect_system_metrics()
        except Exception:
            log_exception(self._logger, "monitor.system.failed")

    async def _prune_pass(self) -> None:
        try:
            self.prune_expired()
        except Exception:
            log_exception(self._logger, "monitor.prune.failed")

    async def _alert_pass(self) -> None:
        try:
            await self.evaluate_alerts()
        except Exception:
            log_exception(self._logger, "monitor.alerts.failed")

    async def start_background(self) -> None:
        """Start the retention, alert and system sampling loops once."""
        if any(not task.done() for task in self._tasks):
            return
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(
                run_periodic_loop(
                    action=self._prune_pass,
                    stop_event=self._stop_event,
                    interval_seconds=self.config.prune_interval_seconds,
                ),
                name="monitor-prune",
            ),
            asyncio.create_task(
                run_periodic_loop(
                    action=self._alert_pass,
                    stop_event=self._stop_event,
                    interval_seconds=self.config.alert_interval_seconds,
                ),
                name="monitor-alerts",
            ),
            asyncio.create_task(
                run_periodic_loop(
                    action=self._system_pass,
                    stop_event=self._stop_event,
                    interval_seconds=self.config.system_interval_seconds,
                ),
                name="monitor-system",
            ),
        ]

    async def stop_background(self) -> None:
        """Stop periodic passes and await task completion."""
        self._stop_event.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except TimeoutError:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
