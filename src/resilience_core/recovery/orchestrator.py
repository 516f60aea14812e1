from __future__ import annotations

import asyncio
import math
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from tenacity import RetryCallState, retry_if_not_exception_type

from resilience_core.circuit_breaker import (
    BreakerListener,
    BreakerStatus,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
)
from resilience_core.errors import RecoveryActionError
from resilience_core.logging import (
    LogSink,
    get_component_logger,
    log_critical,
    log_error,
    log_exception,
    log_info,
    log_warning,
)
from resilience_core.monitor import MetricKind
from resilience_core.recovery.models import (
    AbortAction,
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
from resilience_core.recovery.policy import RecoveryPolicy
from resilience_core.recovery.protocols import (
    HealthTier,
    HostState,
    LoggingRecoveryHooks,
    ManagedEntityStore,
    RecoveryHooks,
)
from resilience_core.retry import RetryBackoffPolicy, build_exponential_retrying

if TYPE_CHECKING:
    from resilience_core.audit import AuditTrail
    from resilience_core.monitor import Monitor

T = TypeVar("T")
R = TypeVar("R")

ERRORS_METRIC = "recovery.errors"
MODE_METRIC = "recovery.mode"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class _HostReading:
    bankrupt: bool
    net_worth: float
    error_count: int
    health: HealthTier | None
    available_budget: float | None

    @property
    def health_critical(self) -> bool:
        return self.health is not None and self.health.is_critical


class ErrorRecoveryOrchestrator:
    """Turn errors into recovery actions and manage process-wide recovery mode.

    The orchestrator owns one circuit breaker per protected operation and keeps
    a bounded history of recent errors. Classification and severity assessment
    never raise; failing recovery actions are logged and left out of the
    result while the remaining actions still run.
    """

    def __init__(
        self,
        *,
        policy: RecoveryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        breaker_listeners: Sequence[BreakerListener] | None = None,
        hooks: RecoveryHooks | None = None,
        audit_trail: AuditTrail | None = None,
        monitor: Monitor | None = None,
        logger: LogSink | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
        max_error_history: int = 1000,
    ) -> None:
        """Create an orchestrator with optional collaborators.

        Args:
            policy: Classification tables and thresholds.
            breaker_config: Configuration for lazily created breakers.
            breaker_listeners: Listeners attached to every created breaker.
            hooks: Host-side effects for fallback and subsystem resets.
            audit_trail: When set, recovery mode changes are recorded here.
            monitor: When set, error and mode metrics are recorded here.
            logger: Structured log sink. Defaults to a structlog logger bound to
                the ``recovery`` category.
            now_fn: Clock used for error timestamps and recovery windows.
            max_error_history: Capacity of the error ring buffer.
        """
        if max_error_history < 1:
            raise ValueError("max_error_history must be >= 1")
        self.policy = RecoveryPolicy() if policy is None else policy
        self._logger = (
            get_component_logger(__name__, "recovery") if logger is None else logger
        )
        self._breaker_config = breaker_config
        self._breaker_listeners = tuple(breaker_listeners or ())
        self._hooks = LoggingRecoveryHooks(self._logger) if hooks is None else hooks
        self._audit = audit_trail
        self._monitor = monitor
        self._now = now_fn
        self._history: deque[ErrorEvent] = deque(maxlen=max_error_history)
        self._breakers: dict[str, CircuitBreaker] = {}
        self._mode_lock = asyncio.Lock()
        self._recovery_mode = False
        self._recovery_started_at: datetime | None = None

        if monitor is not None:
            monitor.register_metric(
                ERRORS_METRIC,
                MetricKind.COUNTER,
                description="Errors handled by the recovery orchestrator",
            )
            monitor.register_metric(
                MODE_METRIC,
                MetricKind.GAUGE,
                description="1 while recovery mode is active",
            )

    @property
    def recovery_mode(self) -> bool:
        return self._recovery_mode

    @property
    def recovery_started_at(self) -> datetime | None:
        return self._recovery_started_at

    @property
    def error_history(self) -> tuple[ErrorEvent, ...]:
        return tuple(self._history)

    def breaker(self, operation_name: str) -> CircuitBreaker:
        """Return the breaker guarding ``operation_name``, creating it once."""
        breaker = self._breakers.get(operation_name)
        if breaker is None:
            breaker = CircuitBreaker(
                operation_name,
                config=self._breaker_config,
                listeners=self._breaker_listeners,
            )
            self._breakers[operation_name] = breaker
        return breaker

    async def recover_from_error(
        self,
        error: BaseException | str,
        context: ErrorContext | None,
        host: HostState,
    ) -> list[RecoveryAction]:
        """Record ``error``, plan recovery and run the planned actions.

        Args:
            error: The failure, as an exception or a message.
            context: Caller-supplied category hint, details and simulation day.
            host: Host whose health drives severity and whose entities the
                actions mutate.

        Returns:
            The actions that executed without error, in planned order.
        """
        now = self._now()
        event = self._record_error(error, context or ErrorContext(), now)
        reading = self._read_host(host)
        severity = self._assess_severity(event, reading, now)
        log_error(
            self._logger,
            "recovery.error.recorded",
            error_category=event.category.value,
            severity=severity.value,
            error_type=event.error_type,
            error_message=event.message,
            simulated_day=event.simulated_day,
        )
        if self._monitor is not None:
            self._monitor.increment_counter(
                ERRORS_METRIC,
                tags={"category": event.category.value, "severity": severity.value},
            )

        if self._should_enter_recovery_mode(reading, severity, now):
            await self.enter_recovery_mode(
                host, reason=f"{severity.value} {event.category.value} error"
            )

        actions = self._plan_actions(event.category, severity, reading)
        return await self.execute_actions(actions, host)

    def _record_error(
        self,
        error: BaseException | str,
        context: ErrorContext,
        now: datetime,
    ) -> ErrorEvent:
        if isinstance(error, BaseException):
            message = str(error) or error.__class__.__name__
            error_type = error.__class__.__name__
        else:
            message = error
            error_type = "Exception"
        event = ErrorEvent(
            category=self.policy.classify(message, context.category),
            message=message,
            timestamp=now,
            error_type=error_type,
            context=context.details,
            simulated_day=context.simulated_day,
        )
        self._history.append(event)
        return event

    def _probe(self, field_name: str, read: Callable[[], R], default: R) -> R:
        try:
            return read()
        except Exception:
            log_exception(self._logger, "recovery.host.read_failed", field=field_name)
            return default

    def _read_host(self, host: HostState) -> _HostReading:
        entities: ManagedEntityStore | None = self._probe(
            "entities", lambda: host.entities, None
        )
        health: HealthTier | None = None
        available_budget: float | None = None
        if entities is not None:
            health = self._probe(
                "health_tier", lambda: HealthTier(entities.health_tier()), None
            )
            available_budget = self._probe(
                "available_budget", entities.available_budget, None
            )
        return _HostReading(
            bankrupt=self._probe("is_bankrupt", host.is_bankrupt, False),
            net_worth=self._probe("net_worth", lambda: host.net_worth, 0.0),
            error_count=self._probe("error_count", lambda: host.error_count, 0),
            health=health,
            available_budget=available_budget,
        )

    def _count_recent(
        self,
        now: datetime,
        window_seconds: float,
        category: ErrorCategory | None = None,
    ) -> int:
        cutoff = now - timedelta(seconds=window_seconds)
        return sum(
            1
            for event in self._history
            if event.timestamp >= cutoff
            and (category is None or event.category == category)
        )

    def _assess_severity(
        self,
        event: ErrorEvent,
        reading: _HostReading,
        now: datetime,
    ) -> Severity:
        if (
            reading.bankrupt
            or reading.net_worth < 0
            or self.policy.is_critical_message(event.message)
        ):
            return Severity.CRITICAL

        if (
            reading.error_count >= self.policy.excessive_error_threshold
            or reading.health_critical
        ):
            severity = Severity.HIGH
        elif reading.health == HealthTier.WARNING:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        for rule in self.policy.escalation_rules:
            recent = self._count_recent(now, rule.window_seconds, event.category)
            if recent > rule.more_than:
                severity = severity.at_least(rule.severity)
        return severity

    def _should_enter_recovery_mode(
        self,
        reading: _HostReading,
        severity: Severity,
        now: datetime,
    ) -> bool:
        if self._recovery_mode:
            return False
        if severity == Severity.CRITICAL:
            return True
        if reading.error_count >= self.policy.recovery_mode_error_threshold:
            return True
        recent = self._count_recent(now, self.policy.recovery_mode_window_seconds)
        return recent > self.policy.recovery_mode_recent_errors

    def _plan_actions(
        self,
        category: ErrorCategory,
        severity: Severity,
        reading: _HostReading,
    ) -> list[RecoveryAction]:
        actions: list[RecoveryAction] = list(self.policy.actions_for(category))
        if severity == Severity.CRITICAL:
            actions.append(
                AbortAction(description="Emergency stop: critical failure detected")
            )
        elif severity == Severity.HIGH:
            actions.append(
                ConservativeModeAction(description="Switch to conservative strategy")
            )

        if (
            reading.available_budget is not None
            and reading.available_budget < self.policy.low_budget_threshold
        ):
            factor = self.policy.low_budget_factor
            actions.append(
                ScaleBudgetsAction(
                    factor=factor,
                    description=(
                        f"Scale budgets to {factor:.0%} due to low available budget"
                    ),
                )
            )
        return actions

    async def execute_actions(
        self,
        actions: Iterable[RecoveryAction],
        host: HostState,
    ) -> list[RecoveryAction]:
        """Run ``actions`` in order and return those that succeeded.

        A failing action is logged with its exception and skipped. Unknown
        action types are logged and skipped. Nothing is retried.
        """
        executed: list[RecoveryAction] = []
        for action in actions:
            try:
                handled = await self._execute(action, host)
            except RecoveryActionError:
                log_exception(
                    self._logger,
                    "recovery.action.failed",
                    action=action.__class__.__name__,
                    description=getattr(action, "description", None),
                )
                continue
            if not handled:
                log_warning(
                    self._logger,
                    "recovery.action.unknown",
                    action=action.__class__.__name__,
                )
                continue
            executed.append(action)
        return executed

    async def _execute(self, action: RecoveryAction, host: HostState) -> bool:
        try:
            return await self._dispatch(action, host)
        except RecoveryActionError:
            raise
        except Exception as exc:
            description = getattr(action, "description", "")
            raise RecoveryActionError(
                f"{action.__class__.__name__} failed: {description}"
            ) from exc

    async def _dispatch(self, action: RecoveryAction, host: HostState) -> bool:
        if isinstance(action, RetryAction):
            # Retries are driven by the caller through execute_with_retry.
            log_info(
                self._logger,
                "recovery.action.retry_planned",
                max_retries=action.max_retries,
                backoff_multiplier=action.backoff_multiplier,
            )
        elif isinstance(action, FallbackAction):
            await self._hooks.activate_fallback(action.strategy)
        elif isinstance(action, DeactivateUnderperformersAction):
            store = host.entities
            self._deactivate(
                store,
                [
                    entity.entity_id
                    for entity in store.active_entities()
                    if entity.performance_ratio < action.min_ratio
                ],
                reason=action.description,
            )
        elif isinstance(action, ScaleBudgetsAction):
            store = host.entities
            entity_ids = [entity.entity_id for entity in store.active_entities()]
            for entity_id in entity_ids:
                store.scale_budget(entity_id, action.factor)
            log_info(
                self._logger,
                "recovery.budgets.scaled",
                factor=action.factor,
                count=len(entity_ids),
            )
        elif isinstance(action, BlockNewEntitiesAction):
            store = host.entities
            self._deactivate(
                store,
                [e.entity_id for e in store.active_entities() if e.pending],
                reason=action.description,
            )
        elif isinstance(action, ConservativeModeAction):
            await self._hooks.enable_conservative_mode()
        elif isinstance(action, ResetAction):
            if action.reset_breakers:
                await self._reset_breakers()
            if action.keep_error_fraction is not None:
                self._trim_history(action.keep_error_fraction)
            if action.target != "all":
                await self._hooks.reset_subsystem(action.target)
        elif isinstance(action, AbortAction):
            store = host.entities
            entity_ids = [entity.entity_id for entity in store.active_entities()]
            self._deactivate(store, entity_ids, reason=action.description)
            log_critical(
                self._logger, "recovery.emergency_stop", deactivated=len(entity_ids)
            )
        else:
            return False
        return True

    def _deactivate(
        self,
        store: ManagedEntityStore,
        entity_ids: list[str],
        *,
        reason: str,
    ) -> None:
        for entity_id in entity_ids:
            store.deactivate(entity_id)
        log_info(
            self._logger,
            "recovery.entities.deactivated",
            count=len(entity_ids),
            reason=reason,
        )

    def _trim_history(self, keep_fraction: float) -> None:
        keep = math.floor(len(self._history) * keep_fraction)
        newest = list(self._history)[-keep:] if keep > 0 else []
        self._history.clear()
        self._history.extend(newest)

    async def _reset_breakers(self) -> None:
        for breaker in list(self._breakers.values()):
            await breaker.reset()

    async def _audit_system_event(self, event: str, details: dict[str, Any]) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record_system_event(event, details)
        except Exception:
            log_exception(self._logger, "recovery.audit.failed", audit_event=event)

    def _record_mode(self, active: bool) -> None:
        if self._monitor is not None:
            self._monitor.record(MODE_METRIC, 1.0 if active else 0.0)

    async def enter_recovery_mode(self, host: HostState, *, reason: str = "") -> bool:
        """Enter recovery mode and run the entry actions once.

        Returns:
            ``False`` when recovery mode was already active.
        """
        async with self._mode_lock:
            if self._recovery_mode:
                return False
            self._recovery_mode = True
            self._recovery_started_at = self._now()
            log_critical(
                self._logger,
                "recovery.mode.entered",
                reason=reason,
                errors_retained=len(self._history),
            )
            self._record_mode(True)
            executed = await self.execute_actions(
                self.policy.recovery_mode_actions, host
            )
            await self._audit_system_event(
                "recovery_mode_entered",
                {
                    "reason": reason,
                    "actions": [action.description for action in executed],
                },
            )
        return True

    async def exit_recovery_mode(self, host: HostState) -> bool:
        """Leave recovery mode when the dwell time has passed and health is back.

        Returns:
            ``True`` when recovery mode was cleared by this call.
        """
        async with self._mode_lock:
            if not self._recovery_mode or self._recovery_started_at is None:
                return False
            now = self._now()
            dwell = (now - self._recovery_started_at).total_seconds()
            if dwell < self.policy.min_dwell_seconds:
                log_info(
                    self._logger,
                    "recovery.mode.exit_deferred",
                    reason="min_dwell",
                    dwell_seconds=dwell,
                )
                return False

            reading = self._read_host(host)
            recent = self._count_recent(now, self.policy.exit_window_seconds)
            healthy = (
                recent < self.policy.exit_max_recent_errors
                and reading.error_count < self.policy.exit_max_host_errors
                and not reading.health_critical
                and reading.net_worth > 0
            )
            if not healthy:
                log_info(
                    self._logger,
                    "recovery.mode.exit_deferred",
                    reason="unhealthy",
                    recent_errors=recent,
                    host_errors=reading.error_count,
                    net_worth=reading.net_worth,
                )
                return False

            self._recovery_mode = False
            self._recovery_started_at = None
            await self._reset_breakers()
            log_info(self._logger, "recovery.mode.exited", dwell_seconds=dwell)
            self._record_mode(False)
            await self._audit_system_event(
                "recovery_mode_exited", {"dwell_seconds": dwell}
            )
        return True

    async def execute_with_circuit_breaker(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        label: str | None = None,
    ) -> T:
        """Run ``operation`` through the breaker named ``operation_name``."""
        return await self.breaker(operation_name).call(operation, label=label)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        action: RetryAction | None = None,
        *,
        label: str | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> T:
        """Run ``operation`` through its breaker, retrying with backoff.

        Rejections by an open breaker are never retried.

        Args:
            operation: Zero-argument async callable.
            operation_name: Name of the guarding breaker.
            action: Retry shape. Defaults to ``RetryAction()``.
            label: Optional call description used in error messages.
            sleep: Optional sleep override for the backoff waits.
        """
        retry_action = RetryAction() if action is None else action
        policy = RetryBackoffPolicy(
            attempts=retry_action.max_retries + 1,
            initial_seconds=retry_action.initial_delay_seconds,
            exp_base=retry_action.backoff_multiplier,
            max_seconds=max(
                retry_action.max_delay_seconds, retry_action.initial_delay_seconds
            ),
        )

        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            log_warning(
                self._logger,
                "recovery.retry.scheduled",
                operation=operation_name,
                attempt=retry_state.attempt_number,
                delay_seconds=(
                    retry_state.next_action.sleep if retry_state.next_action else None
                ),
                error=(
                    repr(outcome.exception())
                    if outcome is not None and outcome.failed
                    else None
                ),
            )

        retrying = build_exponential_retrying(
            retry=retry_if_not_exception_type(CircuitOpenError),
            policy=policy,
            sleep=sleep,
            before_sleep=_before_sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await self.execute_with_circuit_breaker(
                    operation, operation_name, label
                )
        raise RuntimeError(f"retry loop for {operation_name} ended without a result")

    async def get_recovery_status(self) -> RecoveryStatus:
        """Summarize recovery mode, breakers, recent errors and recommendations."""
        now = self._now()
        breakers = list(self._breakers.items())
        statuses: dict[str, BreakerStatus] = {}
        open_breakers = 0
        for name, breaker in breakers:
            statuses[name] = await breaker.status()
            if await breaker.is_open():
                open_breakers += 1

        by_category = Counter(event.category.value for event in self._history)
        recent = RecentErrorCounts(
            total=len(self._history),
            by_category=dict(by_category),
            last_24_hours=self._count_recent(now, self.policy.status_window_seconds),
        )

        recommendations: list[str] = []
        if self._recovery_mode:
            recommendations.append(
                "Currently in recovery mode - monitor for improvement"
            )
        if open_breakers:
            recommendations.append(
                f"{open_breakers} circuit breakers are open - check system health"
            )
        high_rate_window = self.policy.high_error_rate_window_seconds
        if (
            self._count_recent(now, high_rate_window)
            > self.policy.high_error_rate_threshold
        ):
            recommendations.append(
                "High error rate detected - consider manual intervention"
            )
        if not recommendations:
            recommendations.append("System operating normally")

        duration: float | None = None
        if self._recovery_mode and self._recovery_started_at is not None:
            duration = (now - self._recovery_started_at).total_seconds()
        return RecoveryStatus(
            recovery_mode=self._recovery_mode,
            recovery_duration=duration,
            circuit_breakers=statuses,
            recent_errors=recent,
            recommendations=tuple(recommendations),
        )

    def get_error_stats(self) -> ErrorStats:
        """Count retained errors by category and by UTC day."""
        by_category: Counter[str] = Counter()
        by_day: Counter[str] = Counter()
        for event in self._history:
            by_category[event.category.value] += 1
            by_day[event.timestamp.astimezone(UTC).date().isoformat()] += 1
        total = len(self._history)
        return ErrorStats(
            total_errors=total,
            by_category=dict(by_category),
            by_day=dict(by_day),
            average_per_day=total / len(by_day) if by_day else 0.0,
        )

    def clear_error_history(self) -> None:
        """Drop every retained error event."""
        dropped = len(self._history)
        self._history.clear()
        log_info(self._logger, "recovery.history.cleared", dropped=dropped)
