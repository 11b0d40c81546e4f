"""Async utilities shared by the reconciliation engine.

Repositories are awaited by the engine; these helpers bridge blocking
store code into the event loop, bound the concurrency of independent
operations and translate timeouts into the engine's transient error.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from entity_sync.errors import RepositoryTimeoutError

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Used by repository adapters whose underlying store API is blocking
    (desktop client object models, synchronous HTTP clients).

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        class ContactRepository:
            async def fetch(self, ids):
                return await run_sync(self._store.load_many, ids)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    operation: str = "repository operation",
) -> T:
    """Await *awaitable*, converting a timeout into ``RepositoryTimeoutError``.

    A slow store must never be mistaken for a missing entity, so the
    timeout is surfaced as a transient error the retry policy understands.

    Args:
        awaitable: The repository coroutine to await.
        timeout: Seconds to wait, or ``None`` for no limit.
        operation: Short description used in the error message.

    Raises:
        RepositoryTimeoutError: If the operation did not finish in time.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %ss", operation, timeout)
        raise RepositoryTimeoutError(
            f"{operation} timed out after {timeout}s"
        ) from None


async def gather_bounded(
    factories: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[T]:
    """Run coroutine factories concurrently, at most *limit* at a time.

    Factories are called lazily so that no coroutine is created before a
    slot is free. Returns results in input order. Exceptions propagate
    from the first failure.

    Args:
        factories: Zero-argument callables returning awaitables.
        limit: Maximum number of awaitables in flight.

    Returns:
        List of results in the same order as *factories*.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    return list(await asyncio.gather(*(_run(f) for f in factories)))
