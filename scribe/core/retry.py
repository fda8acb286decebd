"""Exponential-backoff retry shared by every resilient call site."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """``max_attempts`` counts the first call; delays grow ``delay * backoff**n``."""

    max_attempts: int = 3
    delay: float = 1.0
    backoff: float = 2.0


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: type[BaseException] | tuple[type[BaseException], ...] = Exception,
    give_up_on: tuple[type[BaseException], ...] = (),
    sleep: SleepFn = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Await ``fn()`` until it succeeds or the policy is exhausted.

    Exceptions matching ``retry_on`` (and not ``give_up_on``) are retried;
    anything else, and the last failure, propagates unchanged.
    """

    def _should_retry(exc: BaseException) -> bool:
        return isinstance(exc, retry_on) and not isinstance(exc, give_up_on)

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d), retrying in %.1fs: %s",
            description, state.attempt_number, policy.max_attempts, delay, exc,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.delay, exp_base=policy.backoff),
        retry=retry_if_exception(_should_retry),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    return await retrying(fn)
