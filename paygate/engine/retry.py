"""
Exponential backoff retry for idempotent provider reads.

Only calls that are safe to repeat go through here: status lookups and
token exchanges. Payment creation is never retried automatically; a failed
create is reported and the caller starts a new attempt.
"""

import asyncio
import logging
from typing import Any, Callable

from paygate.errors import RateLimitError, UpstreamError

logger = logging.getLogger("paygate.retry")

RETRIABLE_STATUS_CODES = {429, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 0.5
MAX_DELAY = 10.0


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function with exponential backoff on retriable errors.

    Args:
        func: Async callable to execute.
        max_retries: Maximum number of retry attempts.

    Returns:
        The result of the function call.

    Raises:
        UpstreamError: On non-retriable failure or exhausted retries.
    """
    delay = BASE_DELAY
    last_error = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except UpstreamError as e:
            last_error = e
            if not e.retriable:
                raise

            if attempt < max_retries:
                sleep_for = min(delay, MAX_DELAY)
                if isinstance(e, RateLimitError) and e.retry_after:
                    sleep_for = min(e.retry_after, MAX_DELAY)

                logger.warning(
                    "Retriable error on attempt %d/%d: %s - sleeping %.1fs",
                    attempt + 1,
                    max_retries + 1,
                    e,
                    sleep_for,
                )
                await asyncio.sleep(sleep_for)
                delay = min(delay * 2, MAX_DELAY)
            else:
                logger.error("Exhausted %d retries for provider call: %s", max_retries, e)
                raise

    raise last_error or UpstreamError("Unknown error after retries")
