"""Retry utilities with exponential backoff for async API calls."""
from __future__ import annotations

import asyncio
import logging
import random
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 60.0  # seconds
DEFAULT_JITTER = 0.5  # 50% jitter


class RateLimitError(Exception):
    """Raised when retries are exhausted."""
    pass


class RetryableError(Exception):
    """Raised for errors that should trigger a retry.

    ``retry_after`` carries a server-provided delay (Slack's Retry-After) when known.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


def compute_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter_range = delay * jitter
    delay = delay + random.uniform(-jitter_range, jitter_range)
    return max(0.1, delay)  # Minimum 100ms


def exponential_backoff(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    retryable_exceptions: tuple[type[Exception], ...] = (RetryableError,),
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator for coroutine functions: exponential backoff with jitter.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.5 = +/-50% randomization).
        retryable_exceptions: Tuple of exception types that trigger retry.
        sleep: Awaitable sleep function, ``asyncio.sleep`` when omitted.

    Returns:
        Decorated coroutine function with retry logic.
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            do_sleep = sleep or asyncio.sleep
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt >= max_retries:
                        logger.error(
                            "Max retries (%d) exceeded for %s: %s",
                            max_retries, func.__name__, str(e)
                        )
                        raise RateLimitError(f"Max retries exceeded: {str(e)}") from e

                    delay = compute_delay(attempt, base_delay, max_delay, jitter)
                    retry_after = getattr(e, "retry_after", None)
                    if retry_after:
                        delay = min(max(delay, float(retry_after)), max_delay)

                    logger.warning(
                        "Retry %d/%d for %s after %.2fs: %s",
                        attempt + 1, max_retries, func.__name__, delay, str(e)
                    )
                    await do_sleep(delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper
    return decorator


def is_rate_limit_error(error: Exception) -> bool:
    """Check if an error indicates rate limiting."""
    error_str = str(error).lower()
    rate_limit_indicators = [
        "rate limit",
        "rate_limit",
        "ratelimit",
        "too many requests",
        "429",
        "quota exceeded",
        "throttl",
    ]
    return any(indicator in error_str for indicator in rate_limit_indicators)


def is_transient_error(error: Exception) -> bool:
    """Check if an error is transient and should be retried."""
    error_str = str(error).lower()
    transient_indicators = [
        "timeout",
        "timed out",
        "connection",
        "temporary",
        "503",
        "502",
        "504",
        "service unavailable",
        "bad gateway",
        "gateway timeout",
    ]
    return any(indicator in error_str for indicator in transient_indicators)
