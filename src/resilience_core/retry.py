from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)
from tenacity.retry import retry_base


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Attempt count and exponential backoff shape for retried operations.

    The wait before attempt ``n + 1`` is ``initial_seconds * exp_base ** (n - 1)``
    capped at ``max_seconds``.

    Attributes:
        attempts: Total attempts including the first call, ``None`` for no cap.
        initial_seconds: Wait after the first failed attempt.
        exp_base: Growth factor between consecutive waits.
        max_seconds: Upper bound for a single wait.
    """

    attempts: int | None
    initial_seconds: float = 1.0
    exp_base: float = 2.0
    max_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be >= 1 when provided")
        if self.initial_seconds < 0:
            raise ValueError("initial_seconds must be >= 0")
        if self.exp_base < 1:
            raise ValueError("exp_base must be >= 1")
        if self.max_seconds < self.initial_seconds:
            raise ValueError("max_seconds must be >= initial_seconds")


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_exponential_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with bounded exponential backoff."""
    stop = (
        stop_never if policy.attempts is None else stop_after_attempt(policy.attempts)
    )
    wait = wait_exponential(
        multiplier=policy.initial_seconds,
        exp_base=policy.exp_base,
        max=policy.max_seconds,
    )
    options: dict[str, Any] = {
        "retry": retry,
        "wait": wait,
        "stop": stop,
        "reraise": reraise,
    }
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(**options)
