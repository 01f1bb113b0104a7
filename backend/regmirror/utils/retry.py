"""Retry helper for transient registry failures."""

import asyncio
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


def async_retry(
    max_attempts: int = 3,
    backoff_base: float = 2.0,
    backoff_max: float = 30.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    should_retry: Callable[[Exception], bool] | None = None,
):
    """Retry an async callable with exponential backoff.

    Args:
        max_attempts: Total number of attempts, including the first one
        backoff_base: Base of the exponential delay in seconds
        backoff_max: Upper bound on a single delay
        exceptions: Exception types that trigger a retry
        should_retry: Optional predicate; returning False re-raises immediately
            (e.g., a 404 is not worth retrying)

    Example:
        @async_retry(max_attempts=3, exceptions=(httpx.TransportError,))
        async def fetch(client, url):
            return await client.get(url)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if should_retry is not None and not should_retry(e):
                        raise
                    if attempt == max_attempts:
                        logger.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise

                    backoff = min(backoff_base ** (attempt - 1), backoff_max)
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {backoff:.1f}s..."
                    )
                    await asyncio.sleep(backoff)

        return wrapper

    return decorator
