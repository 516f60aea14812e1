"""Error events, recovery actions and status views for the orchestrator."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any, ClassVar

from resilience_core.circuit_breaker import BreakerStatus


class ErrorCategory(StrEnum):
    """Subsystem an error is attributed to."""

    API = "api"
    FINANCIAL = "financial"
    ENTITY = "entity"
    CAMPAIGN = "campaign"
    MEMORY = "memory"
    SYSTEM = "system"


class Severity(StrEnum):
    """Ordered error severity, ``LOW < MEDIUM < HIGH < CRITICAL``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)

    def at_least(self, other: "Severity") -> "Severity":
        """Return the higher of ``self`` and ``other``."""
        return self if self.rank >= other.rank else other


class ActionKind(StrEnum):
    """Coarse grouping of recovery actions."""

    RETRY = "retry"
    FALLBACK = "fallback"
    CONSERVATIVE = "conservative"
    RESET = "reset"
    ABORT = "abort"


@dataclass(frozen=True)
class ErrorContext:
    """Caller-supplied information about where an error happened.

    Attributes:
        category: Category to use when the message matches no keyword.
        details: Free-form context recorded with the event.
        simulated_day: Simulation day the error happened on, if any.
    """

    category: ErrorCategory | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    simulated_day: int | None = None


@dataclass(frozen=True)
class ErrorEvent:
    """Immutable record of one error seen by the orchestrator."""

    category: ErrorCategory
    message: str
    timestamp: datetime
    error_type: str = "Exception"
    context: Mapping[str, Any] = field(default_factory=dict)
    simulated_day: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))


@dataclass(frozen=True)
class RetryAction:
    """Retry the failed operation with exponential backoff.

    The orchestrator does not run retries itself; callers hand this action to
    ``execute_with_retry``.
    """

    kind: ClassVar[ActionKind] = ActionKind.RETRY

    max_retries: int = 3
    backoff_multiplier: float = 2.0
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    description: str = "Retry with exponential backoff"

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


@dataclass(frozen=True)
class FallbackAction:
    kind: ClassVar[ActionKind] = ActionKind.FALLBACK

    strategy: str
    description: str = "Switch to a fallback strategy"


@dataclass(frozen=True)
class DeactivateUnderperformersAction:
    kind: ClassVar[ActionKind] = ActionKind.CONSERVATIVE

    min_ratio: float
    description: str = "Deactivate underperforming entities"


@dataclass(frozen=True)
class ScaleBudgetsAction:
    kind: ClassVar[ActionKind] = ActionKind.CONSERVATIVE

    factor: float
    description: str = "Scale budgets of active entities"

    def __post_init__(self) -> None:
        if self.factor < 0:
            raise ValueError("factor must be >= 0")


@dataclass(frozen=True)
class BlockNewEntitiesAction:
    kind: ClassVar[ActionKind] = ActionKind.CONSERVATIVE

    description: str = "Block pending entities from activating"


@dataclass(frozen=True)
class ConservativeModeAction:
    kind: ClassVar[ActionKind] = ActionKind.CONSERVATIVE

    description: str = "Switch the host to conservative operation"


@dataclass(frozen=True)
class ResetAction:
    """Reset a subsystem.

    Attributes:
        target: Subsystem name handed to the recovery hooks; ``"all"`` skips
            the hook call.
        reset_breakers: Close every circuit breaker owned by the orchestrator.
        keep_error_fraction: When set, keep only this newest share of the
            error history.
    """

    kind: ClassVar[ActionKind] = ActionKind.RESET

    target: str = "all"
    reset_breakers: bool = False
    keep_error_fraction: float | None = None
    description: str = "Reset subsystem state"

    def __post_init__(self) -> None:
        if self.keep_error_fraction is not None and not (
            0.0 <= self.keep_error_fraction <= 1.0
        ):
            raise ValueError("keep_error_fraction must be within [0, 1]")


@dataclass(frozen=True)
class AbortAction:
    kind: ClassVar[ActionKind] = ActionKind.ABORT

    description: str = "Emergency stop of all managed entities"


RecoveryAction = (
    RetryAction
    | FallbackAction
    | DeactivateUnderperformersAction
    | ScaleBudgetsAction
    | BlockNewEntitiesAction
    | ConservativeModeAction
    | ResetAction
    | AbortAction
)


@dataclass(frozen=True)
class RecentErrorCounts:
    total: int
    by_category: dict[str, int]
    last_24_hours: int


@dataclass(frozen=True)
class RecoveryStatus:
    """Point-in-time view of the orchestrator.

    Attributes:
        recovery_mode: Whether recovery mode is active.
        recovery_duration: Seconds spent in recovery mode, ``None`` when off.
        circuit_breakers: Status of every owned breaker by operation name.
        recent_errors: Error counts from the retained history.
        recommendations: Human-readable hints derived from the above.
    """

    recovery_mode: bool
    recovery_duration: float | None
    circuit_breakers: dict[str, BreakerStatus]
    recent_errors: RecentErrorCounts
    recommendations: tuple[str, ...]


@dataclass(frozen=True)
class ErrorStats:
    """Aggregate counts over the retained error history."""

    total_errors: int
    by_category: dict[str, int]
    by_day: dict[str, int]
    average_per_day: float
