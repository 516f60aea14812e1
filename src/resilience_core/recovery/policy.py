"""Tunable classification and escalation rules for error recovery."""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType

from resilience_core.recovery.models import (
    AbortAction,
    BlockNewEntitiesAction,
    ConservativeModeAction,
    DeactivateUnderperformersAction,
    ErrorCategory,
    FallbackAction,
    RecoveryAction,
    ResetAction,
    RetryAction,
    ScaleBudgetsAction,
    Severity,
)

DEFAULT_CATEGORY_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.API, ("api", "network", "timeout", "timed out", "connection")),
    (ErrorCategory.FINANCIAL, ("budget", "insufficient", "bankrupt", "funds")),
    (ErrorCategory.ENTITY, ("product", "supplier", "inventory")),
    (ErrorCategory.CAMPAIGN, ("campaign", "ad", "roas")),
    (ErrorCategory.MEMORY, ("memory", "context", "storage")),
)

DEFAULT_CRITICAL_KEYWORDS: tuple[str, ...] = ("bankrupt", "critical")


def _default_category_actions() -> Mapping[ErrorCategory, tuple[RecoveryAction, ...]]:
    return MappingProxyType(
        {
            ErrorCategory.API: (
                RetryAction(
                    max_retries=3,
                    backoff_multiplier=2.0,
                    description="Retry API call with exponential backoff",
                ),
                FallbackAction(
                    strategy="cached_data",
                    description="Use cached data if available",
                ),
            ),
            ErrorCategory.FINANCIAL: (
                ScaleBudgetsAction(
                    factor=0.5, description="Reduce entity budgets immediately"
                ),
                DeactivateUnderperformersAction(
                    min_ratio=1.0,
                    description="Deactivate entities with performance ratio < 1.0",
                ),
            ),
            ErrorCategory.ENTITY: (
                RetryAction(
                    max_retries=2,
                    backoff_multiplier=1.5,
                    description="Retry entity analysis",
                ),
                FallbackAction(
                    strategy="alternative_sources",
                    description="Switch to alternative entity sources",
                ),
            ),
            ErrorCategory.CAMPAIGN: (
                DeactivateUnderperformersAction(
                    min_ratio=1.0, description="Pause underperforming entities"
                ),
                ResetAction(
                    target="optimization",
                    description="Reset optimization settings",
                ),
            ),
            ErrorCategory.MEMORY: (
                ResetAction(target="memory_cache", description="Clear memory cache"),
                ConservativeModeAction(description="Reduce memory usage"),
            ),
            ErrorCategory.SYSTEM: (),
        }
    )


def _default_recovery_mode_actions() -> tuple[RecoveryAction, ...]:
    return (
        DeactivateUnderperformersAction(
            min_ratio=1.5,
            description="Deactivate entities with performance ratio < 1.5",
        ),
        ScaleBudgetsAction(
            factor=0.5, description="Reduce budgets on all active entities by 50%"
        ),
        BlockNewEntitiesAction(description="Block pending entities until recovered"),
        ResetAction(
            target="all",
            reset_breakers=True,
            keep_error_fraction=0.1,
            description="Reset circuit breakers and trim error history",
        ),
    )


@dataclass(frozen=True)
class EscalationRule:
    """Frequency rule raising severity for repeated same-category errors.

    Severity becomes at least ``severity`` when more than ``more_than`` errors
    of the same category were seen within ``window_seconds``.
    """

    window_seconds: float
    more_than: int
    severity: Severity


@dataclass(frozen=True)
class RecoveryPolicy:
    """Keyword tables, thresholds and action tables used by the orchestrator.

    Keywords match whole words case-insensitively, with an optional plural
    ``s``. Categories are tried in table order and the first hit wins.

    Attributes:
        category_keywords: Ordered ``(category, keywords)`` pairs.
        critical_keywords: Keywords that make any error critical.
        category_actions: Actions planned for each category.
        escalation_rules: Frequency rules applied on top of the base severity.
        excessive_error_threshold: Host error count that makes an error high
            severity.
        recovery_mode_error_threshold: Host error count that triggers recovery
            mode.
        recovery_mode_recent_errors: Recovery mode triggers when more errors
            than this were seen within ``recovery_mode_window_seconds``.
        recovery_mode_window_seconds: Window for the rule above.
        recovery_mode_actions: Actions run once on recovery mode entry.
        min_dwell_seconds: Minimum time spent in recovery mode before exit.
        exit_max_recent_errors: Exit requires fewer recent errors than this.
        exit_window_seconds: Window for the rule above.
        exit_max_host_errors: Exit requires a host error count below this.
        low_budget_threshold: Available budget below which budgets get scaled.
        low_budget_factor: Scale factor used by the low-budget safeguard.
        status_window_seconds: Window for the "last 24 hours" status count.
        high_error_rate_window_seconds: Window used by the status recommendation.
        high_error_rate_threshold: Errors in that window that flag a high rate.
    """

    category_keywords: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
        DEFAULT_CATEGORY_KEYWORDS
    )
    critical_keywords: tuple[str, ...] = DEFAULT_CRITICAL_KEYWORDS
    category_actions: Mapping[ErrorCategory, tuple[RecoveryAction, ...]] = field(
        default_factory=_default_category_actions
    )
    escalation_rules: tuple[EscalationRule, ...] = (
        EscalationRule(window_seconds=300.0, more_than=5, severity=Severity.HIGH),
        EscalationRule(window_seconds=600.0, more_than=3, severity=Severity.MEDIUM),
    )
    excessive_error_threshold: int = 10
    recovery_mode_error_threshold: int = 10
    recovery_mode_recent_errors: int = 8
    recovery_mode_window_seconds: float = 300.0
    recovery_mode_actions: tuple[RecoveryAction, ...] = field(
        default_factory=_default_recovery_mode_actions
    )
    min_dwell_seconds: float = 600.0
    exit_max_recent_errors: int = 3
    exit_window_seconds: float = 300.0
    exit_max_host_errors: int = 5
    low_budget_threshold: float = 100.0
    low_budget_factor: float = 0.7
    status_window_seconds: float = 86400.0
    high_error_rate_window_seconds: float = 3600.0
    high_error_rate_threshold: int = 5

    def __post_init__(self) -> None:
        if self.min_dwell_seconds < 0:
            raise ValueError("min_dwell_seconds must be >= 0")
        if not 0 <= self.low_budget_factor <= 1:
            raise ValueError("low_budget_factor must be within [0, 1]")

    @cached_property
    def _category_patterns(self) -> tuple[tuple[ErrorCategory, re.Pattern[str]], ...]:
        return tuple(
            (category, _keyword_pattern(keywords))
            for category, keywords in self.category_keywords
        )

    @cached_property
    def _critical_pattern(self) -> re.Pattern[str]:
        return _keyword_pattern(self.critical_keywords)

    def classify(
        self,
        message: str,
        fallback: ErrorCategory | None = None,
    ) -> ErrorCategory:
        """Return the first category whose keywords appear in ``message``."""
        for category, pattern in self._category_patterns:
            if pattern.search(message):
                return category
        return ErrorCategory.SYSTEM if fallback is None else fallback

    def is_critical_message(self, message: str) -> bool:
        return self._critical_pattern.search(message) is not None

    def actions_for(self, category: ErrorCategory) -> tuple[RecoveryAction, ...]:
        return tuple(self.category_actions.get(category, ()))


def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern[str]:
    if not keywords:
        return re.compile(r"(?!)")
    alternatives = "|".join(re.escape(keyword) for keyword in keywords)
    return re.compile(rf"\b(?:{alternatives})s?\b", re.IGNORECASE)
