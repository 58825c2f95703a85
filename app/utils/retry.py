"""
Centralized async retry utility for transient failures.

Retry policy:
- Exponential backoff with jitter
- Only retries on transient failures (type filter + optional predicate)
- Preserves original exception on final failure
- No logging inside utility (caller handles logging)

Guardrails:
- Domain errors (validation, signature, business rules) are NEVER retried
- Side-effecting upstream calls are retried only when the caller's predicate
  proves the request never reached the provider
- Default: 1 retry → 2 attempts in total
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import asyncpg
import httpx


DEFAULT_RETRIES = 1
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 5.0


# Transient infrastructure exceptions
TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncio.TimeoutError,
    httpx.TransportError,
    ConnectionError,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for `attempt` (0-based) with ±20% jitter, never negative."""
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
    retry_if: Optional[Callable[[BaseException], bool]] = None,
) -> Any:
    """
    Retry an async function with exponential backoff.

    Args:
        fn: Zero-argument callable returning an awaitable
        retries: Number of retry attempts (default: 1, total attempts: 2)
        base_delay: Base delay in seconds for exponential backoff
        max_delay: Maximum delay in seconds
        retry_on: Exception types eligible for retry
        retry_if: Optional predicate; an eligible exception is retried only if it returns True

    Returns:
        Result of the function call

    Raises:
        Original exception if all retries fail.
        Non-retryable exceptions are raised immediately.
    """
    for attempt in range(retries + 1):
        try:
            return await fn()
        except retry_on as e:
            if retry_if is not None and not retry_if(e):
                raise
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("retry_async: unexpected end of retry loop")
