"""
Retry Strategies using Tenacity.

Retries are only safe where a repeat cannot settle twice: callers pass an
idempotency key, or the operation is a read.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from timeledger.core.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


def is_transient_error(exception: BaseException) -> bool:
    """Storage faults, timeouts and busy locks; nothing was committed."""
    return isinstance(exception, StorageUnavailableError)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Retrying ledger operation (attempt {retry_state.attempt_number}): {exc}")


async def execute_with_retry(
    func: Callable[..., Any],
    *args: Any,
    attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function, retrying transient storage failures.

    Args:
        func: Coroutine function to call
        attempts: Total attempts including the first
        min_wait: Lower bound of the exponential backoff in seconds
        max_wait: Upper bound of the exponential backoff in seconds

    Returns:
        Whatever ``func`` returns
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(is_transient_error),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        stop=stop_after_attempt(attempts),
        reraise=True,
        before_sleep=_log_retry,
    ):
        with attempt:
            return await func(*args, **kwargs)
