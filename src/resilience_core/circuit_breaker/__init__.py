"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - Storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an ephemeral,
    per-instance probe mode reported by ``status()`` while a probe is in flight
    and emitted to listeners for observability.
  - Half-open probing is conservative: at most one in-flight probe call is
    permitted per ``CircuitBreaker`` instance.
  - Every call races the wrapped operation against ``call_timeout``. A call that
    loses the race counts as a failure; the abandoned operation's late outcome
    never touches breaker state.
  - If an excluded exception is raised during a probe, the probe is treated as
    if it never happened: no storage changes and no listener state changes.
"""

from resilience_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from resilience_core.circuit_breaker.exceptions import (
    CallTimeoutError,
    CircuitBreakerError,
    CircuitOpenError,
)
from resilience_core.circuit_breaker.metrics import (
    BreakerListener,
    LoggingBreakerListener,
)
from resilience_core.circuit_breaker.state import (
    BreakerSnapshot,
    BreakerStatus,
    CircuitState,
)
from resilience_core.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerSnapshot",
    "BreakerStatus",
    "CallTimeoutError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "InMemoryBreakerStorage",
    "LoggingBreakerListener",
]
