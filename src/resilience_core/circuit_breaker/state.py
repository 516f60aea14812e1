"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Persisted breaker internals.

    Attributes:
        name: Breaker name.
        state: Persisted breaker state, ``CLOSED`` or ``OPEN``.
        failure_count: Consecutive failures since the last success.
        last_failure_at: Timestamp of the last counted failure, if any.
        opened_at: Timestamp when the breaker last entered ``OPEN``, if open.
    """

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None
    opened_at: datetime | None


@dataclass(frozen=True)
class BreakerStatus:
    """Caller-facing view of one breaker.

    ``state`` reports ``HALF_OPEN`` while a probe call is in flight even though
    storage only ever holds ``CLOSED`` or ``OPEN``. ``time_until_reset`` is set
    only while the breaker is open.
    """

    name: str
    state: CircuitState
    failures: int
    threshold: int
    last_failure_at: datetime | None
    time_until_reset: float | None = None
