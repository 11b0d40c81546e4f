"""Bounded exponential backoff for transient repository failures."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from entity_sync.errors import RateLimitedError, TransientError

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently transient failures are retried.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound for any single delay.
        multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        """Delay before attempt number ``attempt + 1`` (attempts are 1-based).

        A ``retry_after`` hint from a ``RateLimitedError`` takes precedence
        when it is longer than the computed backoff, still capped by
        ``max_delay``.
        """
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            delay = max(delay, exc.retry_after)
        return min(delay, self.max_delay)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation*, retrying only ``TransientError``.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Retry limits and backoff.
        description: Used in log messages.
        sleep: Awaitable sleep (injectable for tests).

    Returns:
        The operation's result.

    Raises:
        TransientError: The last transient error once attempts are
            exhausted.
        Exception: Any non-transient error, immediately.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except TransientError as exc:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s",
                    description,
                    attempt,
                    exc,
                )
                raise
            delay = policy.delay_for(attempt, exc)
            logger.info(
                "%s failed transiently (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
            attempt += 1
