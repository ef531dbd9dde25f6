"""Resilience helpers for network-bound calls.

Provides:
    - Retry with exponential backoff (used around completion calls)
    - Deadline enforcement for a whole response cycle

Example:
    result = await retry_async(
        provider.generate_completion,
        request,
        max_attempts=2,
        retry_if=lambda e: isinstance(e, ProviderError) and e.recoverable,
    )

    await with_timeout(orchestrator.generate_and_send_response, 120, ...)
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Retry with Exponential Backoff
# ============================================

DEFAULT_RETRYABLE_EXCEPTIONS = (
    ProviderError,
    asyncio.TimeoutError,
    ConnectionResetError,
)


def is_recoverable(error: Exception) -> bool:
    """Default retry predicate: honour RelayError.recoverable when present."""
    return bool(getattr(error, "recoverable", True))


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    retry_if: Optional[Callable[[Exception], bool]] = is_recoverable,
    **kwargs,
) -> T:
    """Retry an async function call with exponential backoff.

    Args:
        func: Async function to call
        *args: Arguments to pass to func
        max_attempts: Maximum attempts (including the first try)
        backoff_factor: Delay multiplier
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        retryable_exceptions: Exceptions to consider for retry
        retry_if: Extra predicate; a retryable exception failing it is re-raised
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from func
    """
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise

            if attempt >= max_attempts:
                logger.error(f"All {max_attempts} attempts failed. Last error: {e}")
                raise

            actual_delay = min(delay * (0.5 + random.random()), max_delay)
            logger.warning(
                f"Retry {attempt}/{max_attempts}: {e}. Waiting {actual_delay:.1f}s"
            )
            await asyncio.sleep(actual_delay)
            delay = min(delay * backoff_factor, max_delay)

    raise RuntimeError("Retry logic error")


# ============================================
# Deadlines
# ============================================

async def with_timeout(
    func: Callable[..., Awaitable[T]],
    timeout_seconds: Optional[float],
    *args,
    **kwargs,
) -> T:
    """Execute async function under a deadline.

    The inner task is cancelled when the deadline passes, so every
    suspension point below it (provider call, tool call, dispatch) sees
    the cancellation.

    Raises:
        asyncio.TimeoutError: If the deadline passes
    """
    if not timeout_seconds:
        return await func(*args, **kwargs)
    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"{getattr(func, '__name__', 'call')} timed out after {timeout_seconds}s")
        raise
