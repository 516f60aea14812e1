"""Collaborator protocols the orchestrator acts upon."""

from collections.abc import Sequence
from enum import StrEnum
from typing import Protocol

from resilience_core.logging import LogSink, get_component_logger, log_info


class HealthTier(StrEnum):
    """Financial health tiers reported by the host."""

    EXCELLENT = "excellent"
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"
    BANKRUPT = "bankrupt"

    @property
    def is_critical(self) -> bool:
        return self in (HealthTier.CRITICAL, HealthTier.BANKRUPT)


class ManagedEntity(Protocol):
    """Read-only view of one entity owned by the host."""

    @property
    def entity_id(self) -> str: ...

    @property
    def performance_ratio(self) -> float: ...

    @property
    def budget(self) -> float: ...

    @property
    def pending(self) -> bool: ...


class ManagedEntityStore(Protocol):
    """Capabilities recovery actions are expressed against."""

    def active_entities(self) -> Sequence[ManagedEntity]: ...

    def deactivate(self, entity_id: str) -> None: ...

    def scale_budget(self, entity_id: str, factor: float) -> None: ...

    def available_budget(self) -> float: ...

    def health_tier(self) -> HealthTier: ...


class HostState(Protocol):
    """Host-level health figures read during severity assessment."""

    @property
    def net_worth(self) -> float: ...

    @property
    def error_count(self) -> int: ...

    @property
    def entities(self) -> ManagedEntityStore: ...

    def is_bankrupt(self) -> bool: ...


class RecoveryHooks(Protocol):
    """Host-side effects for actions the orchestrator cannot perform itself."""

    async def activate_fallback(self, strategy: str) -> None:
        """Switch the affected subsystem to ``strategy``."""

    async def reset_subsystem(self, target: str) -> None:
        """Reset cached or derived state of ``target``."""

    async def enable_conservative_mode(self) -> None:
        """Reduce risk-taking across the host."""


class LoggingRecoveryHooks(RecoveryHooks):
    """Default hooks that only record the requested effect."""

    def __init__(self, logger: LogSink | None = None) -> None:
        self._logger = (
            get_component_logger(__name__, "recovery") if logger is None else logger
        )

    async def activate_fallback(self, strategy: str) -> None:
        log_info(self._logger, "recovery.fallback.requested", strategy=strategy)

    async def reset_subsystem(self, target: str) -> None:
        log_info(self._logger, "recovery.reset.requested", target=target)

    async def enable_conservative_mode(self) -> None:
        log_info(self._logger, "recovery.conservative_mode.requested")
