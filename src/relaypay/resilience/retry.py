"""
Retry Strategies using Tenacity.

Used for idempotent reads only (balances, quotes, recipient lookups,
confirmation polls). Submissions are never retried in-process; a failed job is
retried by the queue, which re-reads the persisted legs first.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from relaypay.core.exceptions import RelayPayError, is_retryable
from relaypay.core.logging import get_logger

logger = get_logger("resilience.retry")

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "502",
    "503",
    "504",
    "network error",
    "rate limit",
)


def is_transient_error(exception: BaseException) -> bool:
    """Check if exception is a transient network/infrastructure error."""
    if isinstance(exception, RelayPayError):
        return is_retryable(exception)
    if isinstance(exception, (TimeoutError, ConnectionError)):
        return True
    msg = str(exception).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


async def execute_with_retry(
    func: Callable[..., Any],
    *args: Any,
    attempts: int = 3,
    max_wait: float = 8.0,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function with the standard retry policy.

    Retries transient errors with exponential backoff (1s, 2s, 4s, capped at
    ``max_wait``); any other error propagates immediately.
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(is_transient_error),
        wait=wait_exponential(multiplier=1, min=1, max=max_wait),
        stop=stop_after_attempt(attempts),
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    ):
        with attempt:
            return await func(*args, **kwargs)
