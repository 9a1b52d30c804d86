"""
Retry-with-backoff helper for collaborator calls (mounting, listings).
"""
import logging
import random
import time
from functools import wraps
from typing import Any, Callable, TypeVar

from ..config import MAX_RETRIES, RETRY_BACKOFF_FACTOR

# Type variable for generic function
T = TypeVar('T')

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, backoff_factor: float = RETRY_BACKOFF_FACTOR, jitter: bool = True) -> float:
    """Seconds to wait before retry number `attempt` (1-based)."""
    delay = backoff_factor ** attempt
    if jitter:
        delay += random.uniform(0, 1)
    return delay


def with_retry(
    max_retries: int = MAX_RETRIES,
    backoff_factor: float = RETRY_BACKOFF_FACTOR,
    exceptions: tuple = (Exception,),
) -> Callable:
    """
    Decorator retrying a call with exponential backoff.

    The last exception is re-raised once max_retries retries have failed.
    Exceptions outside `exceptions` propagate immediately.

    Args:
        max_retries: Retries after the first attempt
        backoff_factor: Base of the exponential delay
        exceptions: Exception types that trigger a retry

    Returns:
        Decorator
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = getattr(func, '__name__', 'call')

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{name} failed after {attempt + 1} attempt(s): {e}")
                        raise

                    delay = backoff_delay(attempt + 1, backoff_factor)
                    logger.warning(
                        f"{name} attempt {attempt + 1}/{max_retries + 1} failed: "
                        f"{e.__class__.__name__}: {e}. Retrying in {delay:.2f}s"
                    )
                    time.sleep(delay)
            raise RuntimeError(f"{name}: retry loop exited without a result")

        return wrapper
    return decorator
