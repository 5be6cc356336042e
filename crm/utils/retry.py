"""
Async retry with exponential backoff and jitter for transient infra failures.

Policy:
- only exceptions listed in retry_on are retried; ledger/domain errors are
  raised immediately
- delay = min(base_delay * 2**attempt, max_delay) +/- 20% jitter
- the original exception propagates after the last attempt
- no logging here; callers log

Never wrap a ledger unit of work in this helper: a retried payment must come
back through the webhook with the same external reference instead.
"""

import asyncio
import inspect
import random
from typing import Any, Awaitable, Callable, Tuple, Type

import asyncpg

DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0

TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Call fn() until it succeeds or retries are exhausted.

    Args:
        fn: zero-argument callable returning an awaitable
        retries: extra attempts after the first (default 2, so 3 calls total)
        base_delay: first backoff delay in seconds
        max_delay: backoff ceiling in seconds
        retry_on: exception types treated as transient

    Raises:
        The last exception when all attempts fail, or any non-transient
        exception immediately
    """
    for attempt in range(retries + 1):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except retry_on:
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("retry_async: unexpected end of retry loop")
