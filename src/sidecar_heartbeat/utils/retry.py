"""Retry utilities with exponential backoff."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 0.1,
    max_delay: float = 2.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,)
) -> T:
    """
    Execute an async function with exponential backoff retry logic.

    Args:
        func: Async function to execute
        max_attempts: Maximum number of attempts, 0 retries forever
        initial_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add random jitter to delays
        exceptions: Tuple of exceptions to catch and retry on

    Returns:
        Result of the function call

    Raises:
        The last exception encountered if all attempts fail
    """
    delay = initial_delay
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func()
        except exceptions as e:
            if max_attempts and attempt >= max_attempts:
                logger.error(f"Function failed after {max_attempts} attempts: {e}")
                raise

            if jitter:
                # ±25% of the delay
                jitter_range = delay * 0.25
                actual_delay = delay + random.uniform(-jitter_range, jitter_range)
            else:
                actual_delay = delay

            actual_delay = max(0.0, min(actual_delay, max_delay))

            logger.debug(
                f"Attempt {attempt} failed: {e}. "
                f"Retrying in {actual_delay:.2f} seconds..."
            )

            await asyncio.sleep(actual_delay)
            delay = min(delay * backoff_factor, max_delay)

