from __future__ import annotations

import pytest

from tests.resilience_core.support.runtime_fakes import (
    FakeClock,
    FakeEntity,
    FakeEntityStore,
    FakeHost,
    FakeLogger,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a manually advanced clock per test."""
    return FakeClock()


@pytest.fixture
def fake_host() -> FakeHost:
    """Provide a healthy host with a small mixed entity portfolio."""
    store = FakeEntityStore()
    store.add(FakeEntity("winner", performance_ratio=2.5, budget=200.0))
    store.add(FakeEntity("marginal", performance_ratio=1.2, budget=100.0))
    store.add(FakeEntity("loser", performance_ratio=0.6, budget=80.0))
    store.add(FakeEntity("fresh", performance_ratio=1.8, budget=50.0, pending=True))
    return FakeHost(entities=store)
