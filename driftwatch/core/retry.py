"""
Retry Helpers
-------------
Exponential backoff with jitter for transient infrastructure errors.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Tuple, Type

from driftwatch.core.errors import TransientError

logger = logging.getLogger(__name__)

JITTER_FACTOR = 0.2  # Add up to 20% jitter to avoid thundering herd


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Delay before the given retry attempt (1-based), with jitter.

    Args:
        attempt: Retry attempt number starting at 1
        base_delay: Delay of the first retry in seconds
        max_delay: Upper bound before jitter

    Returns:
        Seconds to wait
    """
    delay = min(base_delay * (2 ** max(attempt - 1, 0)), max_delay)
    return delay + delay * JITTER_FACTOR * random.random()


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    name: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
) -> Any:
    """
    Run an async callable, retrying transient failures with exponential backoff.

    Args:
        func: Async function to execute
        name: Name of the operation for logging
        max_retries: Maximum number of retry attempts
        base_delay: Delay of the first retry in seconds
        max_delay: Upper bound on a single delay
        retry_on: Exception types that trigger a retry

    Returns:
        The callable's result

    Raises:
        The last exception once retries are exhausted, or any
        exception not listed in ``retry_on`` immediately.
    """
    attempt = 0
    while True:
        try:
            if attempt > 0:
                logger.info(f"Retry attempt {attempt} for {name}")
            start_time = time.time()
            result = await func()
            logger.debug(f"{name} completed in {time.time() - start_time:.2f}s")
            return result
        except retry_on as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(f"{name} failed after {max_retries} retries: {str(e)}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"{name} failed: {str(e)}; retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
