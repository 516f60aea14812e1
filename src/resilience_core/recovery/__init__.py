"""Error classification, recovery planning and recovery-mode control."""

from resilience_core.recovery.models import (
    AbortAction,
    ActionKind,
    BlockNewEntitiesAction,
    ConservativeModeAction,
    DeactivateUnderperformersAction,
    ErrorCategory,
    ErrorContext,
    ErrorEvent,
    ErrorStats,
    FallbackAction,
    RecentErrorCounts,
    RecoveryAction,
    RecoveryStatus,
    ResetAction,
    RetryAction,
    ScaleBudgetsAction,
    Severity,
)
from resilience_core.recovery.orchestrator import ErrorRecoveryOrchestrator
from resilience_core.recovery.policy import EscalationRule, RecoveryPolicy
from resilience_core.recovery.protocols import (
    HealthTier,
    HostState,
    LoggingRecoveryHooks,
    ManagedEntity,
    ManagedEntityStore,
    RecoveryHooks,
)

__all__ = [
    "AbortAction",
    "ActionKind",
    "BlockNewEntitiesAction",
    "ConservativeModeAction",
    "DeactivateUnderperformersAction",
    "ErrorCategory",
    "ErrorContext",
    "ErrorEvent",
    "ErrorRecoveryOrchestrator",
    "ErrorStats",
    "EscalationRule",
    "FallbackAction",
    "HealthTier",
    "HostState",
    "LoggingRecoveryHooks",
    "ManagedEntity",
    "ManagedEntityStore",
    "RecentErrorCounts",
    "RecoveryAction",
    "RecoveryHooks",
    "RecoveryPolicy",
    "RecoveryStatus",
    "ResetAction",
    "RetryAction",
    "ScaleBudgetsAction",
    "Severity",
]
