"""
Retry helper for writes against the Call Record Store.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from family_calls.utils.exceptions import SignalingWriteError, StoreException

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    description: str,
    call_id: str = None,
    retry_on: Tuple[Type[BaseException], ...] = (StoreException,),
) -> T:
    """
    Run a store operation with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Maximum number of attempts
        base_delay: Delay before the second attempt, doubled each time
        description: Short label for log lines
        call_id: Call the write targets
        retry_on: Exception types considered transient

    Returns:
        The operation result

    Raises:
        SignalingWriteError: If every attempt failed
    """
    last_error = None
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if attempt < attempts - 1:
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{attempts}): {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    logger.error(f"{description} failed after {attempts} attempts: {last_error}")
    raise SignalingWriteError(f"{description} failed: {last_error}", call_id=call_id)
