"""Retry Wrapper with exponential backoff and optional jitter.

Backoff strategy:
  delay = min(initial_delay * backoff_factor^attempt, max_delay)
          + random(0, jitter)

Every exception is treated as retryable; there is no error-kind filtering.
This is a known limitation: permanently fatal failures (bad request, bad
credentials) burn the whole retry budget too. Callers that must not retry
such failures classify them before calling with_retry.

Attempts within one call are strictly sequential and there is no overall
deadline or cancellation; wrap the whole call in asyncio.wait_for if one is
needed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from analyzer_llm.gateway.types import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class RetryResult(Generic[T]):
    """A successful result and how many attempts it took."""

    result: T
    attempts: int


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Delay in seconds before retrying after the 0-based *attempt*."""
    delay = policy.initial_delay * (policy.backoff_factor**attempt)
    if policy.max_delay is not None:
        delay = min(delay, policy.max_delay)
    if policy.jitter > 0:
        delay += random.uniform(0, policy.jitter)
    return delay


async def with_retry_and_count(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> RetryResult[T]:
    """Run *operation* under *policy*, returning the result and attempt count.

    On exhaustion the last exception is re-raised unmodified.
    *on_retry* is called with (retry_number, error) before each wait.
    """
    policy = policy or DEFAULT_RETRY_POLICY
    attempt = 0

    while True:
        try:
            result = await operation()
            return RetryResult(result=result, attempts=attempt + 1)
        except Exception as e:
            if attempt >= policy.max_retries:
                logger.warning(
                    "Giving up after %d attempt(s): %s",
                    attempt + 1,
                    e,
                    extra={"attempt": attempt + 1},
                )
                raise

            delay = compute_backoff(attempt, policy)
            if on_retry is not None:
                on_retry(attempt + 1, e)

            logger.info(
                "Retry attempt %d/%d in %.2fs. Error: %s",
                attempt + 1,
                policy.max_retries,
                delay,
                e,
                extra={"attempt": attempt + 1},
            )
            await asyncio.sleep(delay)
            attempt += 1


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Run *operation* until it succeeds or the retry budget is spent.

    Usage:
        response = await with_retry(
            lambda: provider.send_request(request),
            RetryPolicy(max_retries=2, initial_delay=0.5),
        )

    With max_retries=N the operation runs at most N + 1 times.
    """
    outcome = await with_retry_and_count(operation, policy, on_retry=on_retry)
    return outcome.result
