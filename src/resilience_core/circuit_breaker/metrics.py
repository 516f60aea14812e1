"""Observability hooks for circuit breakers."""

from typing import Protocol

from resilience_core.circuit_breaker.state import CircuitState
from resilience_core.logging import (
    LogSink,
    get_component_logger,
    log_error,
    log_info,
    log_warning,
)


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change(OPEN → HALF_OPEN)`` is emitted once per completed
        probe attempt, immediately before the probe outcome transition.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener(BreakerListener):
    """Log breaker transitions, with open circuits at elevated severity."""

    def __init__(self, logger: LogSink | None = None) -> None:
        self._logger = (
            get_component_logger(__name__, "circuit_breaker")
            if logger is None
            else logger
        )

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        if new == CircuitState.OPEN:
            log_error(
                self._logger,
                "circuit_breaker.opened",
                breaker=name,
                previous_state=str(old),
            )
            return
        log_info(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=name,
            previous_state=str(old),
            state=str(new),
        )

    async def on_call_rejected(self, name: str) -> None:
        log_warning(self._logger, "circuit_breaker.call_rejected", breaker=name)

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        _ = (name, elapsed)

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.call_failed",
            breaker=name,
            error=f"{exc.__class__.__name__}: {exc}",
            elapsed_seconds=round(elapsed, 6),
        )
