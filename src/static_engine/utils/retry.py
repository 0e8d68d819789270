"""Retry helpers for external API calls."""

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryableError(Exception):
    """Base class for errors that are worth another attempt."""

    pass


class APIRateLimitError(RetryableError):
    """Upstream API rejected the call because of rate limits or quota."""

    pass


class NetworkError(RetryableError):
    """Transient network failure (connection reset, timeout, 5xx)."""

    pass


def _delay_for(attempt: int, delays: Sequence[float] | None, base_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if delays:
        return delays[min(attempt - 1, len(delays) - 1)]
    return base_delay * (2 ** (attempt - 1))


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    delays: Sequence[float] | None = None,
    retry_on: tuple[type[BaseException], ...] = (RetryableError,),
    operation: str = "API call",
) -> T:
    """Run ``func`` until it succeeds or the attempt budget is spent.

    Only exceptions listed in ``retry_on`` trigger another attempt; anything
    else propagates immediately.

    Args:
        func: Zero-argument coroutine factory
        max_attempts: Total number of attempts (including the first)
        base_delay: Exponential backoff base when ``delays`` is not given
        delays: Explicit per-retry delays in seconds
        retry_on: Exception types that are retried
        operation: Label used in log messages

    Returns:
        The first successful result
    """
    attempt = 1
    while True:
        try:
            result = await func()
            if attempt > 1:
                logger.info(f"{operation} succeeded on attempt {attempt}/{max_attempts}")
            return result
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(f"{operation} failed after {max_attempts} attempts: {e}")
                raise
            delay = _delay_for(attempt, delays, base_delay)
            logger.warning(
                f"{operation} attempt {attempt}/{max_attempts} failed: {e} - retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1


def retry_api_call(max_retries: int = 3, base_delay: float = 1.0):
    """Decorator form of :func:`retry_async` for coroutine methods.

    Args:
        max_retries: Total number of attempts
        base_delay: Exponential backoff base in seconds
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_async(
                lambda: func(*args, **kwargs),
                max_attempts=max_retries,
                base_delay=base_delay,
                operation=func.__qualname__,
            )

        return wrapper

    return decorator
