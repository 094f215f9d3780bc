"""Retry with exponential backoff and jitter

Only transient failures get another attempt: network timeouts, refused
connections, 429/5xx responses from the course service and engine errors
flagged retryable. Everything else is raised on the first failure.
"""

import asyncio
import random
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from learnquest.exceptions import LearnQuestError

logger = logging.getLogger(__name__)

T = TypeVar('T')

MAX_RETRIES = 3
BASE_DELAY = 0.2  # seconds
MAX_DELAY = 5.0  # seconds
JITTER = 0.1  # +/- 10% of the delay

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable_error(exc: Exception) -> bool:
    """
    Whether a failure is transient

    Client errors (4xx other than 429), lookups, validation and malformed
    responses are final; unknown exception types are not retried.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES

    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError)):
        return True

    if isinstance(exc, LearnQuestError):
        return exc.retryable

    return False


def calculate_backoff(attempt: int) -> float:
    """
    Delay before retry number `attempt` (0-indexed)

    BASE_DELAY doubled per attempt, capped at MAX_DELAY, with jitter:
    roughly 0.2s, 0.4s, 0.8s, ...
    """
    delay = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
    return max(delay + random.uniform(-JITTER * delay, JITTER * delay), 0.0)


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    operation: Optional[str] = None,
    **kwargs: Any
) -> T:
    """
    Await func(*args, **kwargs), retrying transient failures

    Args:
        func: Async callable to run
        max_retries: Retries after the first attempt
        operation: Label for log lines (defaults to func's name)

    Raises:
        The last error, once it is not transient or retries run out
    """
    label = operation or func.__name__
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_error(e):
                raise
            if attempt >= max_retries:
                logger.error(
                    f"[RETRY] Giving up on {label} after {attempt + 1} attempts: "
                    f"{type(e).__name__}: {e}"
                )
                raise

            backoff = calculate_backoff(attempt)
            attempt += 1
            logger.warning(
                f"[RETRY] {label} failed ({type(e).__name__}), "
                f"retry {attempt}/{max_retries} in {backoff:.2f}s"
            )
            await asyncio.sleep(backoff)
