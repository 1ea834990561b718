from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt
from tenacity.retry import retry_base
from tenacity.wait import wait_base

RATE_LIMITED_STATUS = 429


def is_retryable_status(status_code: int) -> bool:
    """Return true for statuses that suggest a retry might succeed."""
    return status_code == RATE_LIMITED_STATUS or 500 <= status_code <= 599


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and exponential backoff bounds.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        backoff_factor: Multiplier applied per attempt, at least 1.
        min_delay: Lower delay bound in seconds, also the first delay.
        max_delay: Upper delay bound in seconds.
        jitter: Scale each delay by a uniform factor in ``[0.5, 1.5)``.
        random_source: Returns floats in ``[0, 1)``; injectable for tests.
    """

    max_retries: int = 3
    backoff_factor: float = 2.0
    min_delay: float = 1.0
    max_delay: float = 10.0
    jitter: bool = True
    random_source: Callable[[], float] = field(
        default=random.random, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.min_delay < 0:
            raise ValueError("min_delay must be >= 0")
        if self.max_delay < self.min_delay:
            raise ValueError("max_delay must be >= min_delay")

    @property
    def max_attempts(self) -> int:
        """Total attempts allowed, the first one included."""
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Return the backoff delay in seconds after 1-indexed ``attempt``."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        try:
            delay = self.min_delay * self.backoff_factor ** (attempt - 1)
        except OverflowError:
            return self.max_delay
        if self.jitter:
            delay *= 0.5 + self.random_source()
        return min(max(delay, self.min_delay), self.max_delay)


class wait_retry_policy(wait_base):
    """Tenacity wait strategy delegating to ``RetryPolicy.delay_for``."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.policy.delay_for(retry_state.attempt_number)


def build_interruptible_sleep(
    cancel_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early once the caller cancels."""

    async def _interruptible_sleep(delay: float) -> None:
        if cancel_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(cancel_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_policy_retrying(
    *,
    retry: retry_base,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` driven by ``policy`` backoff and budget."""
    options: dict[str, Any] = {}
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(
        retry=retry,
        wait=wait_retry_policy(policy),
        stop=stop_after_attempt(policy.max_attempts),
        reraise=reraise,
        **options,
    )
