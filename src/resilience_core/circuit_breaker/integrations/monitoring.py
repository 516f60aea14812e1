from __future__ import annotations

from resilience_core.circuit_breaker import BreakerListener, CircuitState
from resilience_core.monitor import MetricKind, Monitor


class MonitorBreakerListener(BreakerListener):
    """Feed breaker events into monitor counters.

    For a breaker named ``svc`` the listener maintains:
      - ``circuit_breaker.svc.calls`` (counter, tagged ``outcome``)
      - ``circuit_breaker.svc.rejections`` (counter)
      - ``circuit_breaker.svc.opened`` (counter)
      - ``circuit_breaker.svc.latency`` (histogram, milliseconds)
    """

    def __init__(self, *, monitor: Monitor, prefix: str = "circuit_breaker") -> None:
        self._monitor = monitor
        self._prefix = prefix
        self._registered: set[str] = set()

    def _metric(self, breaker: str, suffix: str, kind: MetricKind) -> str:
        name = f"{self._prefix}.{breaker}.{suffix}"
        if name not in self._registered:
            if self._monitor.get_metric(name) is None:
                self._monitor.register_metric(name, kind)
            self._registered.add(name)
        return name

    async def on_state_change(
        self,
        name: str,
        old: CircuitState,
        new: CircuitState,
    ) -> None:
        _ = old
        if new == CircuitState.OPEN:
            self._monitor.increment_counter(
                self._metric(name, "opened", MetricKind.COUNTER)
            )

    async def on_call_rejected(self, name: str) -> None:
        self._monitor.increment_counter(
            self._metric(name, "rejections", MetricKind.COUNTER)
        )

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        self._monitor.increment_counter(
            self._metric(name, "calls", MetricKind.COUNTER), tags={"outcome": "ok"}
        )
        self._monitor.record(
            self._metric(name, "latency", MetricKind.HISTOGRAM), elapsed * 1000.0
        )

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        self._monitor.increment_counter(
            self._metric(name, "calls", MetricKind.COUNTER),
            tags={"outcome": exc.__class__.__name__},
        )
        self._monitor.record(
            self._metric(name, "latency", MetricKind.HISTOGRAM), elapsed * 1000.0
        )
