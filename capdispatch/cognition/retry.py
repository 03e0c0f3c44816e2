"""Bounded backoff around a single outbound provider request.

Transient failures (rate limiting, overload, transport errors, timeouts) are
retried with a capped, non-decreasing delay; anything else is re-raised on
the spot without consuming a retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from capdispatch.cognition.errors import is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bounds.

    Parameters
    ----------
    max_attempts:
        Total attempts including the first one.
    initial_delay:
        Delay in seconds before the second attempt.
    max_delay:
        Upper bound for any single delay.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number *attempt* (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        return min(self.max_delay, self.initial_delay * attempt)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    sleep: SleepFn = asyncio.sleep,
    on_retry: RetryCallback | None = None,
) -> T:
    """Run *operation*, retrying transient failures.

    Makes at most ``policy.max_attempts`` attempts. After the last transient
    failure the error propagates unchanged.
    """
    policy = policy or RetryPolicy()

    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception()
        delay = state.next_action.sleep
        logger.warning(
            "Transient provider error (attempt %d/%d), retrying in %.2fs: %s",
            state.attempt_number,
            policy.max_attempts,
            delay,
            str(exc)[:200],
        )
        if on_retry is not None:
            on_retry(state.attempt_number, exc, delay)

    retrying = AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_incrementing(
            start=policy.initial_delay,
            increment=policy.initial_delay,
            max=policy.max_delay,
        ),
        retry=retry_if_exception(is_transient),
        sleep=sleep,
        before_sleep=before_sleep,
    )
    return await retrying(operation)
