import asyncio
import logging

from config.env import (
    CONFLICT_MAX_RETRIES,
    EXTERNAL_BACKOFF_BASE_SECONDS,
    EXTERNAL_MAX_ATTEMPTS,
)
from utils.errors import ConflictError, ExternalServiceError, ExternalTimeoutError

logger = logging.getLogger(__name__)


async def retry_on_conflict(operation, *, attempts: int = CONFLICT_MAX_RETRIES):
    """
    Re-run `operation` (a zero-arg coroutine factory) when a compare-and-set
    write loses a race. Each attempt re-reads state, so no backoff.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConflictError:
            if attempt == attempts:
                raise
            logger.info("CAS_CONFLICT_RETRY attempt=%s", attempt)


async def call_with_timeout(func, *args, timeout: float, **kwargs):
    """Run a blocking external call in a thread, bounded by `timeout`."""
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise ExternalTimeoutError(f"{getattr(func, '__name__', 'call')} exceeded {timeout}s")


async def with_backoff(
    operation,
    *,
    attempts: int = EXTERNAL_MAX_ATTEMPTS,
    base_delay: float = EXTERNAL_BACKOFF_BASE_SECONDS,
    label: str = "external_call",
):
    """
    Retry transient external failures with exponential backoff
    (base, 2*base, 4*base, ...). The last failure propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ExternalServiceError as e:
            if attempt == attempts:
                logger.error("EXTERNAL_RETRIES_EXHAUSTED label=%s attempts=%s error=%s", label, attempts, e)
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "EXTERNAL_RETRY label=%s attempt=%s delay=%.2f error=%s",
                label,
                attempt,
                delay,
                e,
            )
            await asyncio.sleep(delay)
