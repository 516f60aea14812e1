"""State storage for circuit breakers.

Storage only holds counters and the persisted state. Timestamps are supplied by
the breaker so that a single clock drives every transition.

Storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an ephemeral,
per-instance probe mode tracked by the breaker itself.
"""

import asyncio
import sys
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime

from resilience_core.circuit_breaker.state import BreakerSnapshot, CircuitState


def _closed_snapshot(name: str) -> BreakerSnapshot:
    return BreakerSnapshot(
        name=name,
        state=CircuitState.CLOSED,
        failure_count=0,
        last_failure_at=None,
        opened_at=None,
    )


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call and return the updated snapshot."""

    @abstractmethod
    async def record_failure(self, name: str, at: datetime) -> BreakerSnapshot:
        """Count one failure observed at ``at`` and return the updated snapshot."""

    @abstractmethod
    async def force_open(self, name: str, at: datetime) -> BreakerSnapshot:
        """Move breaker ``name`` to ``OPEN`` starting its reset window at ``at``."""

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker ``name`` to a healthy ``CLOSED`` state."""


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory storage with per-breaker cooperative + optional thread locks."""

    def __init__(self) -> None:
        self._snapshots: dict[str, BreakerSnapshot] = {}
        self._async_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._thread_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())

    @asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[None]:
        async_lock = self._async_locks[name]
        if self._gil_enabled:
            async with async_lock:
                yield
            return

        thread_lock = self._thread_locks[name]
        thread_lock.acquire()
        try:
            await async_lock.acquire()
        except Exception:
            thread_lock.release()
            raise
        try:
            yield
        finally:
            async_lock.release()
            thread_lock.release()

    def _current(self, name: str) -> BreakerSnapshot:
        snapshot = self._snapshots.get(name)
        if snapshot is None:
            snapshot = _closed_snapshot(name)
            self._snapshots[name] = snapshot
        return snapshot

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a closed one if missing."""
        async with self._locked(name):
            return self._current(name)

    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call.

        A healthy snapshot is returned untouched to avoid hot-path writes.
        """
        async with self._locked(name):
            snapshot = self._current(name)
            if snapshot == _closed_snapshot(name):
                return snapshot
            updated = _closed_snapshot(name)
            self._snapshots[name] = updated
            return updated

    async def record_failure(self, name: str, at: datetime) -> BreakerSnapshot:
        """Increment the consecutive-failure counter."""
        async with self._locked(name):
            snapshot = self._current(name)
            updated = replace(
                snapshot,
                failure_count=snapshot.failure_count + 1,
                last_failure_at=at,
            )
            self._snapshots[name] = updated
            return updated

    async def force_open(self, name: str, at: datetime) -> BreakerSnapshot:
        """Open the circuit and restart the reset window."""
        async with self._locked(name):
            updated = replace(
                self._current(name), state=CircuitState.OPEN, opened_at=at
            )
            self._snapshots[name] = updated
            return updated

    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker state and counters to a healthy default snapshot."""
        async with self._locked(name):
            updated = _closed_snapshot(name)
            self._snapshots[name] = updated
            return updated
