from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from resilience_core.audit import AuditTrail
from resilience_core.circuit_breaker import BreakerListener, LoggingBreakerListener
from resilience_core.circuit_breaker.integrations.monitoring import (
    MonitorBreakerListener,
)
from resilience_core.logging import (
    LogSink,
    configure_structlog,
    get_component_logger,
    log_info,
)
from resilience_core.monitor import AlertListener, Monitor
from resilience_core.recovery import (
    ErrorRecoveryOrchestrator,
    RecoveryHooks,
    RecoveryPolicy,
)
from resilience_core.settings import ResilienceSettings


@dataclass(frozen=True)
class ResilienceRuntime:
    """The single set of resilience components shared by one process."""

    settings: ResilienceSettings
    monitor: Monitor
    audit_trail: AuditTrail
    orchestrator: ErrorRecoveryOrchestrator
    logger: LogSink

    async def start(self) -> None:
        """Start background pruning and alert evaluation."""
        await self.monitor.start_background()
        log_info(self.logger, "runtime.started")

    async def stop(self) -> None:
        """Stop background tasks; safe to call more than once."""
        await self.monitor.stop_background()
        log_info(self.logger, "runtime.stopped")


def build_runtime(
    settings: ResilienceSettings | None = None,
    *,
    logger: LogSink | None = None,
    policy: RecoveryPolicy | None = None,
    hooks: RecoveryHooks | None = None,
    alert_listeners: Sequence[AlertListener] | None = None,
    breaker_listeners: Sequence[BreakerListener] | None = None,
    configure_logging: bool = False,
) -> ResilienceRuntime:
    """Construct the monitor, audit trail and orchestrator exactly once.

    Components are wired by reference: every breaker created by the orchestrator
    reports to the monitor and the log, and recovery mode changes land in the
    audit trail.

    Args:
        settings: Resolved settings. Defaults to reading the environment.
        logger: Shared log sink. Defaults to per-component structlog loggers.
        policy: Recovery policy. Defaults to ``RecoveryPolicy`` with the
            configured minimum dwell time.
        hooks: Host-side effects for fallback and subsystem resets.
        alert_listeners: Listeners notified of alert transitions.
        breaker_listeners: Extra listeners attached to every breaker.
        configure_logging: Whether to configure structlog from ``settings``.
    """
    resolved = ResilienceSettings() if settings is None else settings
    if configure_logging:
        configure_structlog(
            log_level=resolved.log_level, service_name=resolved.service_name
        )
    runtime_logger = (
        get_component_logger(__name__, "runtime") if logger is None else logger
    )

    monitor = Monitor(
        config=resolved.monitor_config(),
        listeners=alert_listeners,
        logger=logger,
    )
    audit_trail = AuditTrail(
        resolved.audit_dir,
        logger=logger,
        max_cached_entries=resolved.audit_max_cached_entries,
    )
    if policy is None:
        policy = RecoveryPolicy(min_dwell_seconds=resolved.recovery_min_dwell_seconds)
    orchestrator = ErrorRecoveryOrchestrator(
        policy=policy,
        breaker_config=resolved.breaker_config(),
        breaker_listeners=(
            LoggingBreakerListener(logger),
            MonitorBreakerListener(monitor=monitor),
            *(breaker_listeners or ()),
        ),
        hooks=hooks,
        audit_trail=audit_trail,
        monitor=monitor,
        logger=logger,
        max_error_history=resolved.recovery_max_error_history,
    )
    log_info(
        runtime_logger,
        "runtime.built",
        audit_dir=str(audit_trail.directory),
        breaker_failure_threshold=resolved.breaker_failure_threshold,
    )
    return ResilienceRuntime(
        settings=resolved,
        monitor=monitor,
        audit_trail=audit_trail,
        orchestrator=orchestrator,
        logger=runtime_logger,
    )
