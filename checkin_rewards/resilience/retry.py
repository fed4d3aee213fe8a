"""Retry logic with exponential backoff and jitter

Used around the attestation call:
1. Only retries transient errors (timeouts, connection errors, 429 and 5xx)
2. Uses exponential backoff with jitter to prevent thundering herd
3. Gives up after max retries and re-raises the last error
"""

import asyncio
import random
import logging
from typing import Any, Awaitable, Callable, TypeVar
from functools import wraps
import httpx

from checkin_rewards.observability.metrics import record_retry

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Retry configuration
MAX_RETRIES = 3
BASE_DELAY = 0.5  # seconds
MAX_DELAY = 8.0  # seconds
JITTER = 0.1  # 10% random jitter

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def is_retryable_error(exc: Exception) -> bool:
    """
    Determine if error is transient and should be retried.

    Retryable:
    - Timeouts and connection failures
    - HTTP 429 (rate limit) and 500/502/503/504

    Not retryable:
    - HTTP 4xx client errors (bad schema id, bad recipient, auth)
    - Anything that isn't an httpx transport/status error
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES

    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)):
        return True

    return False


def calculate_backoff(attempt: int, base_delay: float = BASE_DELAY) -> float:
    """
    Exponential backoff delay with jitter.

    Formula: min(base_delay * 2 ** attempt, MAX_DELAY) +/- 10%

    Example:
        Attempt 0: ~0.5s
        Attempt 1: ~1s
        Attempt 2: ~2s
    """
    delay = min(base_delay * (2 ** attempt), MAX_DELAY)
    jitter_amount = random.uniform(-JITTER * delay, JITTER * delay)
    return max(delay + jitter_amount, 0.0)


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs: Any
) -> T:
    """
    Retry async function with exponential backoff.

    Args:
        func: Async function to call
        max_retries: Retries after the first attempt (0 = call once)
        base_delay: Delay before the first retry, doubled each time
        *args, **kwargs: Arguments to pass to func

    Returns:
        Result from func

    Raises:
        The last exception once retries are exhausted, or immediately for
        non-retryable errors

    Example:
        result = await retry_with_backoff(client.post, url, json=body, max_retries=2)
    """
    name = getattr(func, "__name__", repr(func))

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)

        except Exception as e:
            if not is_retryable_error(e):
                logger.warning(f"[RETRY] Non-retryable error for {name}: {type(e).__name__}: {e}")
                raise

            if attempt == max_retries:
                logger.error(f"[RETRY] All {max_retries} retries exhausted for {name}")
                raise

            backoff = calculate_backoff(attempt, base_delay)
            record_retry(name)
            logger.info(
                f"[RETRY] Attempt {attempt + 1}/{max_retries} for {name} "
                f"after {backoff:.2f}s (error: {type(e).__name__})"
            )
            await asyncio.sleep(backoff)

    raise RuntimeError(f"retry_with_backoff exited without result for {name}")


def with_retry(max_retries: int = MAX_RETRIES, base_delay: float = BASE_DELAY) -> Callable:
    """
    Decorator form of retry_with_backoff.

    Example:
        @with_retry(max_retries=2)
        async def post_attestation(body):
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_with_backoff(
                func, *args, max_retries=max_retries, base_delay=base_delay, **kwargs
            )
        return wrapper
    return decorator
