"""Core circuit breaker implementation."""

import asyncio
import sys
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

from resilience_core.circuit_breaker.exceptions import (
    CallTimeoutError,
    CircuitOpenError,
)
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import (
    BreakerSnapshot,
    BreakerStatus,
    CircuitState,
)
from resilience_core.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _discard_late_outcome(task: "asyncio.Future[object]") -> None:
    with suppress(asyncio.CancelledError, Exception):
        task.exception()


class _ProbeGate:
    """Allow at most one in-flight half-open probe per breaker instance."""

    def __init__(self) -> None:
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())
        self._thread_lock: threading.Lock | None = None
        if not self._gil_enabled:
            self._thread_lock = threading.Lock()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._thread_lock is None:
            if self._held:
                return False
            self._held = True
            return True

        with self._thread_lock:
            if self._held:
                return False
            self._held = True
            return True

    def release(self) -> None:
        if self._thread_lock is None:
            self._held = False
            return
        with self._thread_lock:
            self._held = False


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures required while ``CLOSED`` before
            opening.
        recovery_timeout: Seconds after the last failure before a probe is let
            through.
        call_timeout: Seconds a protected call may run before it is abandoned and
            counted as a failure. ``None`` disables the race.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 300.0
    call_timeout: float | None = 60.0
    expected_exceptions: tuple[type[Exception], ...] = (Exception,)
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ValueError("call_timeout must be > 0")


class CircuitBreaker:
    """Stateful proxy around one failure-prone async operation."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Unique breaker name used for storage and metrics.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._probe_gate = _ProbeGate()

    async def _emit(self, hook: str, *args: object) -> None:
        for listener in self._listeners:
            try:
                await getattr(listener, hook)(self.name, *args)
            except Exception:
                continue

    def _retry_after(self, snapshot: BreakerSnapshot, now: datetime) -> float:
        anchor = snapshot.last_failure_at or snapshot.opened_at or now
        elapsed = (now - anchor).total_seconds()
        return max(self.config.recovery_timeout - elapsed, 0.0)

    async def _run_with_timeout(
        self,
        func: Callable[[], Awaitable[T]],
        label: str | None,
    ) -> T:
        timeout = self.config.call_timeout
        if timeout is None:
            return await func()

        task = asyncio.ensure_future(func())
        if isinstance(task, asyncio.Task):
            callable_name = getattr(func, "__qualname__", None) or getattr(
                func, "__name__", func.__class__.__qualname__
            )
            task.set_name(f"circuit_breaker:{self.name}:{callable_name}")
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except TimeoutError as exc:
            # The first settlement wins; a late outcome is consumed and dropped.
            task.add_done_callback(_discard_late_outcome)
            raise CallTimeoutError(self.name, timeout, label) from exc
        except asyncio.CancelledError:
            task.cancel()
            raise

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        label: str | None = None,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Zero-argument async callable to execute.
            label: Optional description of the call used in error messages.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            CallTimeoutError: When ``func`` does not settle within
                ``call_timeout``.
            Exception: The original exception from ``func`` when it is attempted
                and fails.
        """
        snapshot = await self._storage.get_state(self.name)
        is_probe = False

        if snapshot.state == CircuitState.OPEN:
            retry_after = self._retry_after(snapshot, _utcnow())
            if retry_after > 0:
                await self._emit("on_call_rejected")
                raise CircuitOpenError(self.name, retry_after=retry_after, label=label)

            if not self._probe_gate.try_acquire():
                await self._emit("on_call_rejected")
                raise CircuitOpenError(self.name, retry_after=0.0, label=label)
            is_probe = True

        start = time.monotonic()
        try:
            result = await self._run_with_timeout(func, label)
        except self.config.excluded_exceptions:
            raise
        except self.config.expected_exceptions + (CallTimeoutError,) as exc:
            elapsed = max(time.monotonic() - start, 0.0)
            await self._emit("on_call_failed", exc, elapsed)

            failed_at = _utcnow()
            if is_probe:
                await self._emit(
                    "on_state_change", CircuitState.OPEN, CircuitState.HALF_OPEN
                )
                await self._storage.record_failure(self.name, failed_at)
                await self._storage.force_open(self.name, failed_at)
                await self._emit(
                    "on_state_change", CircuitState.HALF_OPEN, CircuitState.OPEN
                )
            else:
                failure_snapshot = await self._storage.record_failure(
                    self.name, failed_at
                )
                if (
                    failure_snapshot.state == CircuitState.CLOSED
                    and failure_snapshot.failure_count >= self.config.failure_threshold
                ):
                    await self._storage.force_open(self.name, failed_at)
                    await self._emit(
                        "on_state_change", CircuitState.CLOSED, CircuitState.OPEN
                    )
            raise
        else:
            elapsed = max(time.monotonic() - start, 0.0)

            if is_probe:
                await self._emit(
                    "on_state_change", CircuitState.OPEN, CircuitState.HALF_OPEN
                )
                await self._storage.reset(self.name)
                await self._emit(
                    "on_state_change", CircuitState.HALF_OPEN, CircuitState.CLOSED
                )
            else:
                await self._storage.record_success(self.name)

            await self._emit("on_call_succeeded", elapsed)
            return result
        finally:
            if is_probe:
                self._probe_gate.release()

    async def status(self) -> BreakerStatus:
        """Return state, failure count and time until a probe is allowed."""
        snapshot = await self._storage.get_state(self.name)
        state = snapshot.state
        time_until_reset: float | None = None
        if state == CircuitState.OPEN:
            if self._probe_gate.held:
                state = CircuitState.HALF_OPEN
            else:
                time_until_reset = self._retry_after(snapshot, _utcnow())
        return BreakerStatus(
            name=self.name,
            state=state,
            failures=snapshot.failure_count,
            threshold=self.config.failure_threshold,
            last_failure_at=snapshot.last_failure_at,
            time_until_reset=time_until_reset,
        )

    async def is_open(self) -> bool:
        """Return whether calls are currently being rejected outright."""
        snapshot = await self._storage.get_state(self.name)
        if snapshot.state != CircuitState.OPEN:
            return False
        return self._retry_after(snapshot, _utcnow()) > 0

    async def reset(self) -> None:
        """Force the breaker closed and clear its failure counter."""
        snapshot = await self._storage.get_state(self.name)
        await self._storage.reset(self.name)
        if snapshot.state == CircuitState.OPEN:
            await self._emit("on_state_change", CircuitState.OPEN, CircuitState.CLOSED)
