from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from resilience_core.audit import AuditCategory, AuditSearchCriteria, AuditTrail
from resilience_core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from resilience_core.monitor import Monitor
from resilience_core.recovery import (
    AbortAction,
    ConservativeModeAction,
    ErrorCategory,
    ErrorContext,
    ErrorRecoveryOrchestrator,
    FallbackAction,
    RecoveryPolicy,
    ResetAction,
    RetryAction,
    ScaleBudgetsAction,
)
from tests.resilience_core.support.runtime_fakes import (
    FakeClock,
    FakeHost,
    FakeLogger,
    RecordingHooks,
)

pytestmark = pytest.mark.asyncio


def _orchestrator(
    logger: FakeLogger,
    clock: FakeClock,
    **kwargs: object,
) -> ErrorRecoveryOrchestrator:
    return ErrorRecoveryOrchestrator(
        logger=logger,
        now_fn=clock.now,
        **kwargs,  # type: ignore[arg-type]
    )


class _BrokenHost:
    error_count = 0

    @property
    def net_worth(self) -> float:
        raise RuntimeError("ledger offline")

    @property
    def entities(self):
        raise RuntimeError("store offline")

    def is_bankrupt(self) -> bool:
        raise RuntimeError("ledger offline")


async def test_bankrupt_message_yields_abort_and_emergency_stop(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    actions = await orchestrator.recover_from_error(
        RuntimeError("Account is bankrupt"), None, fake_host
    )

    assert any(isinstance(action, AbortAction) for action in actions)
    assert fake_host.entities.active_entities() == []
    assert orchestrator.recovery_mode is True
    assert fake_logger.levels_for("recovery.mode.entered") == ["critical"]
    assert fake_logger.levels_for("recovery.emergency_stop") == ["critical"]


async def test_negative_net_worth_is_critical(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    fake_host.net_worth = -10.0
    orchestrator = _orchestrator(fake_logger, fake_clock)

    actions = await orchestrator.recover_from_error(
        "supplier feed rejected", ErrorContext(simulated_day=4), fake_host
    )

    assert isinstance(actions[-1], AbortAction)
    assert orchestrator.error_history[-1].simulated_day == 4


async def test_ten_host_errors_enter_recovery_and_exit_waits_for_dwell(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    for _ in range(10):
        fake_host.error_count += 1
        await orchestrator.recover_from_error("unexpected glitch", None, fake_host)
        fake_clock.advance(60)

    assert orchestrator.recovery_mode is True
    store = fake_host.entities
    assert set(store.deactivated) == {"loser", "marginal", "fresh"}
    assert ("winner", 0.5) in store.scaled

    orchestrator.clear_error_history()
    fake_host.error_count = 0
    assert await orchestrator.exit_recovery_mode(fake_host) is False
    assert orchestrator.recovery_mode is True


async def test_exit_succeeds_after_dwell_when_healthy_and_resets_breakers(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(
        fake_logger,
        fake_clock,
        breaker_config=CircuitBreakerConfig(failure_threshold=1),
    )

    async def _fail() -> None:
        raise RuntimeError("nope")

    assert await orchestrator.enter_recovery_mode(fake_host, reason="manual")
    with pytest.raises(RuntimeError):
        await orchestrator.execute_with_circuit_breaker(_fail, "quotes")
    assert await orchestrator.breaker("quotes").is_open() is True
    fake_clock.advance(601)
    fake_host.error_count = 4

    assert await orchestrator.exit_recovery_mode(fake_host) is True
    assert orchestrator.recovery_mode is False
    assert orchestrator.recovery_started_at is None
    status = await orchestrator.breaker("quotes").status()
    assert status.state == CircuitState.CLOSED
    assert await orchestrator.exit_recovery_mode(fake_host) is False


@pytest.mark.parametrize(
    ("mutate", "reason"),
    [
        (lambda host: setattr(host, "error_count", 5), "host errors"),
        (lambda host: setattr(host, "net_worth", 0.0), "net worth"),
        (
            lambda host: setattr(host.entities, "health", "critical"),
            "critical health",
        ),
    ],
)
async def test_exit_is_refused_while_unhealthy(
    fake_logger: FakeLogger,
    fake_clock: FakeClock,
    fake_host: FakeHost,
    mutate,
    reason: str,
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)
    await orchestrator.enter_recovery_mode(fake_host)
    fake_clock.advance(3600)
    mutate(fake_host)

    assert await orchestrator.exit_recovery_mode(fake_host) is False, reason
    assert orchestrator.recovery_mode is True


async def test_exit_is_refused_with_recent_errors(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)
    await orchestrator.enter_recovery_mode(fake_host)
    fake_clock.advance(600)
    for _ in range(3):
        await orchestrator.recover_from_error("glitch", None, fake_host)

    assert await orchestrator.exit_recovery_mode(fake_host) is False


async def test_entering_twice_is_a_no_op(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    assert await orchestrator.enter_recovery_mode(fake_host) is True
    started = orchestrator.recovery_started_at
    fake_clock.advance(10)
    assert await orchestrator.enter_recovery_mode(fake_host) is False

    assert orchestrator.recovery_started_at == started
    assert fake_logger.levels_for("recovery.mode.entered") == ["critical"]


async def test_recovery_entry_keeps_newest_tenth_of_history(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)
    for index in range(20):
        await orchestrator.recover_from_error(f"glitch {index}", None, fake_host)
        fake_clock.advance(301)
    assert orchestrator.recovery_mode is False

    await orchestrator.enter_recovery_mode(fake_host)

    assert [event.message for event in orchestrator.error_history] == [
        "glitch 18",
        "glitch 19",
    ]


async def test_api_errors_retry_and_fall_back(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    hooks = RecordingHooks()
    orchestrator = _orchestrator(fake_logger, fake_clock, hooks=hooks)

    actions = await orchestrator.recover_from_error(
        TimeoutError("API request timed out"), None, fake_host
    )

    assert [type(action) for action in actions] == [RetryAction, FallbackAction]
    assert hooks.calls == [("fallback", "cached_data")]
    assert orchestrator.error_history[-1].category == ErrorCategory.API
    assert orchestrator.error_history[-1].error_type == "TimeoutError"


@pytest.mark.parametrize(
    ("message", "hint", "expected"),
    [
        ("Insufficient funds for transfer", None, ErrorCategory.FINANCIAL),
        ("failed to load supplier catalogue", None, ErrorCategory.ENTITY),
        ("ROAS dropped below target", None, ErrorCategory.CAMPAIGN),
        ("ads rejected by platform", None, ErrorCategory.CAMPAIGN),
        ("context window overflow", None, ErrorCategory.MEMORY),
        ("bad address format", None, ErrorCategory.SYSTEM),
        ("bad address format", ErrorCategory.CAMPAIGN, ErrorCategory.CAMPAIGN),
    ],
)
async def test_classification_by_keyword_then_hint_then_system(
    fake_logger: FakeLogger,
    fake_clock: FakeClock,
    fake_host: FakeHost,
    message: str,
    hint: ErrorCategory | None,
    expected: ErrorCategory,
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    await orchestrator.recover_from_error(
        message, ErrorContext(category=hint), fake_host
    )

    assert orchestrator.error_history[-1].category == expected


async def test_swapped_policy_changes_classification() -> None:
    policy = RecoveryPolicy(category_keywords=((ErrorCategory.MEMORY, ("heap",)),))

    assert policy.classify("Heap exhausted") == ErrorCategory.MEMORY
    assert policy.classify("API down") == ErrorCategory.SYSTEM


async def test_failing_action_is_skipped_and_the_rest_still_run(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(
        fake_logger, fake_clock, hooks=RecordingHooks(fail_fallback=True)
    )
    planned = [
        FallbackAction(strategy="cached_data"),
        ScaleBudgetsAction(factor=0.9),
        ResetAction(target="all", keep_error_fraction=0.0),
    ]

    executed = await orchestrator.execute_actions(planned, fake_host)

    assert executed == planned[1:]
    assert ("winner", 0.9) in fake_host.entities.scaled
    assert fake_logger.levels_for("recovery.action.failed") == ["exception"]


async def test_unknown_action_types_are_logged_and_skipped(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    executed = await orchestrator.execute_actions(
        [object(), ConservativeModeAction()],  # type: ignore[list-item]
        fake_host,
    )

    assert executed == [ConservativeModeAction()]
    assert fake_logger.levels_for("recovery.action.unknown") == ["warning"]


async def test_store_failures_do_not_escape(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    fake_host.entities.fail_deactivate = True
    orchestrator = _orchestrator(fake_logger, fake_clock)

    actions = await orchestrator.recover_from_error(
        "Account is bankrupt", None, fake_host
    )

    assert not any(isinstance(action, AbortAction) for action in actions)
    assert orchestrator.recovery_mode is True


async def test_repeated_same_category_errors_escalate_to_conservative_mode(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    hooks = RecordingHooks()
    orchestrator = _orchestrator(fake_logger, fake_clock, hooks=hooks)

    results = []
    for _ in range(6):
        results.append(
            await orchestrator.recover_from_error("network blip", None, fake_host)
        )
        fake_clock.advance(10)

    assert not any(isinstance(a, ConservativeModeAction) for a in results[4])
    assert any(isinstance(a, ConservativeModeAction) for a in results[5])
    assert ("conservative", None) in hooks.calls
    assert orchestrator.recovery_mode is False


async def test_burst_of_errors_enters_recovery_mode(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    for index in range(9):
        assert orchestrator.recovery_mode is False
        await orchestrator.recover_from_error(f"glitch {index}", None, fake_host)
        fake_clock.advance(5)

    assert orchestrator.recovery_mode is True


async def test_low_available_budget_adds_scale_down(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    fake_host.entities.budget_available = 50.0
    orchestrator = _orchestrator(fake_logger, fake_clock)

    actions = await orchestrator.recover_from_error("glitch", None, fake_host)

    assert actions == [
        ScaleBudgetsAction(
            factor=0.7,
            description="Scale budgets to 70% due to low available budget",
        )
    ]


async def test_unreadable_host_never_raises(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    actions = await orchestrator.recover_from_error(
        "glitch",
        None,
        _BrokenHost(),  # type: ignore[arg-type]
    )

    assert actions == []
    assert "recovery.host.read_failed" in fake_logger.events


async def test_breakers_are_created_lazily_and_reused(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    orchestrator = _orchestrator(
        fake_logger,
        fake_clock,
        breaker_config=CircuitBreakerConfig(failure_threshold=2),
    )

    async def _fail() -> None:
        raise RuntimeError("nope")

    async def _ok() -> str:
        return "ok"

    assert await orchestrator.execute_with_circuit_breaker(_ok, "quotes") == "ok"
    for _ in range(2):
        with pytest.raises(RuntimeError):
            await orchestrator.execute_with_circuit_breaker(_fail, "quotes")

    with pytest.raises(CircuitOpenError):
        await orchestrator.execute_with_circuit_breaker(_ok, "quotes")
    assert await orchestrator.execute_with_circuit_breaker(_ok, "ledger") == "ok"
    assert orchestrator.breaker("quotes") is orchestrator.breaker("quotes")


async def test_execute_with_retry_backs_off_until_success(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)
    delays: list[float] = []
    attempts = 0

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    async def _flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ConnectionError("reset by peer")
        return "ok"

    result = await orchestrator.execute_with_retry(
        _flaky,
        "quotes",
        RetryAction(max_retries=3, backoff_multiplier=2.0, initial_delay_seconds=0.5),
        sleep=_sleep,
    )

    assert result == "ok"
    assert attempts == 3
    assert delays == [0.5, 1.0]
    assert fake_logger.levels_for("recovery.retry.scheduled") == [
        "warning",
        "warning",
    ]


async def test_execute_with_retry_does_not_retry_open_circuit(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    orchestrator = _orchestrator(
        fake_logger,
        fake_clock,
        breaker_config=CircuitBreakerConfig(failure_threshold=1),
    )
    attempts = 0

    async def _sleep(delay: float) -> None:
        return None

    async def _fail() -> None:
        nonlocal attempts
        attempts += 1
        raise ConnectionError("reset by peer")

    with pytest.raises(CircuitOpenError):
        await orchestrator.execute_with_retry(
            _fail, "quotes", RetryAction(max_retries=5), sleep=_sleep
        )

    assert attempts == 1


async def test_execute_with_retry_reraises_after_exhausting_attempts(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    async def _sleep(delay: float) -> None:
        return None

    async def _fail() -> None:
        raise ConnectionError("reset by peer")

    with pytest.raises(ConnectionError):
        await orchestrator.execute_with_retry(
            _fail, "quotes", RetryAction(max_retries=2), sleep=_sleep
        )

    status = await orchestrator.breaker("quotes").status()
    assert status.failures == 3


async def test_recovery_status_and_recommendations(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(
        fake_logger,
        fake_clock,
        breaker_config=CircuitBreakerConfig(failure_threshold=1),
    )

    status = await orchestrator.get_recovery_status()
    assert status.recovery_mode is False
    assert status.recovery_duration is None
    assert status.recommendations == ("System operating normally",)

    async def _fail() -> None:
        raise RuntimeError("nope")

    await orchestrator.enter_recovery_mode(fake_host)
    with pytest.raises(RuntimeError):
        await orchestrator.execute_with_circuit_breaker(_fail, "quotes")
    for index in range(6):
        await orchestrator.recover_from_error(f"API down {index}", None, fake_host)
    fake_clock.advance(90)

    status = await orchestrator.get_recovery_status()

    assert status.recovery_mode is True
    assert status.recovery_duration == 90.0
    assert status.circuit_breakers["quotes"].state == CircuitState.OPEN
    assert status.recent_errors.total == 6
    assert status.recent_errors.by_category == {"api": 6}
    assert status.recent_errors.last_24_hours == 6
    assert status.recommendations == (
        "Currently in recovery mode - monitor for improvement",
        "1 circuit breakers are open - check system health",
        "High error rate detected - consider manual intervention",
    )


async def test_error_stats_group_by_category_and_day(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    await orchestrator.recover_from_error("API down", None, fake_host)
    await orchestrator.recover_from_error("budget exceeded", None, fake_host)
    fake_clock.advance(86400)
    await orchestrator.recover_from_error("API down", None, fake_host)

    stats = orchestrator.get_error_stats()

    assert stats.total_errors == 3
    assert stats.by_category == {"api": 2, "financial": 1}
    assert stats.by_day == {"2024-03-15": 2, "2024-03-16": 1}
    assert stats.average_per_day == 1.5

    orchestrator.clear_error_history()
    assert orchestrator.get_error_stats().total_errors == 0
    assert orchestrator.get_error_stats().average_per_day == 0.0


async def test_mode_changes_are_audited_and_measured(
    tmp_path: Path,
    fake_logger: FakeLogger,
    fake_clock: FakeClock,
    fake_host: FakeHost,
) -> None:
    audit = AuditTrail(tmp_path, logger=fake_logger, now_fn=fake_clock.now)
    monitor = Monitor(logger=fake_logger, now_fn=fake_clock.now)
    orchestrator = _orchestrator(
        fake_logger, fake_clock, audit_trail=audit, monitor=monitor
    )

    await orchestrator.recover_from_error("Account is bankrupt", None, fake_host)
    fake_clock.advance(700)
    assert await orchestrator.exit_recovery_mode(fake_host) is True

    entries = await audit.search(AuditSearchCriteria(category=AuditCategory.SYSTEM))
    assert [entry.action for entry in entries] == [
        "SYSTEM_RECOVERY_MODE_ENTERED",
        "SYSTEM_RECOVERY_MODE_EXITED",
    ]
    mode = monitor.get_metric("recovery.mode")
    errors = monitor.get_metric("recovery.errors")
    assert mode is not None
    assert [point.value for point in mode.points] == [1.0, 0.0]
    assert errors is not None
    assert errors.points[-1].tags == {"category": "financial", "severity": "critical"}


async def test_orchestrator_rejects_empty_history() -> None:
    with pytest.raises(ValueError, match="max_error_history"):
        ErrorRecoveryOrchestrator(max_error_history=0)


async def test_audit_write_failure_does_not_block_emergency_stop(
    tmp_path: Path,
    fake_logger: FakeLogger,
    fake_clock: FakeClock,
    fake_host: FakeHost,
) -> None:
    audit_dir = tmp_path / "audit"
    audit = AuditTrail(audit_dir, logger=fake_logger, now_fn=fake_clock.now)
    orchestrator = _orchestrator(fake_logger, fake_clock, audit_trail=audit)
    shutil.rmtree(audit_dir)

    actions = await orchestrator.recover_from_error(
        RuntimeError("Account is bankrupt"), None, fake_host
    )

    assert orchestrator.recovery_mode is True
    assert isinstance(actions[-1], AbortAction)
    assert fake_host.entities.active_entities() == []
    assert fake_logger.levels_for("recovery.audit.failed") == ["exception"]

    fake_clock.advance(700)
    assert await orchestrator.exit_recovery_mode(fake_host) is True
    assert fake_logger.levels_for("recovery.audit.failed") == [
        "exception",
        "exception",
    ]


async def test_concurrent_critical_errors_enter_recovery_mode_once(
    fake_logger: FakeLogger, fake_clock: FakeClock, fake_host: FakeHost
) -> None:
    orchestrator = _orchestrator(fake_logger, fake_clock)

    results = await asyncio.gather(
        *(
            orchestrator.recover_from_error("Account is bankrupt", None, fake_host)
            for _ in range(10)
        )
    )

    store = fake_host.entities
    assert fake_logger.levels_for("recovery.mode.entered") == ["critical"]
    assert all(isinstance(actions[-1], AbortAction) for actions in results)
    assert sorted(store.deactivated) == ["fresh", "loser", "marginal", "winner"]
