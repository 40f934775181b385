"""Retry logic with exponential backoff for idempotent backend calls.

Only transient I/O failures are retried. Verification failures
(AuthenticationError and its subclasses) and missing objects propagate
immediately: retrying cannot change their outcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pigeonhole.core.config import RetryConfig
from pigeonhole.core.errors import TransientBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exceptions that indicate a transient backend or connectivity issue
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransientBackendError,
    ConnectionError,
    TimeoutError,
)


def retry_with_backoff(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    description: str = "backend call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute a function with exponential backoff retry.

    Args:
        func: Idempotent function to execute.
        config: Retry settings (defaults to RetryConfig()).
        retryable_exceptions: Tuple of exception types to retry on.
        description: Short label for log messages.
        sleep: Sleep function (injectable for tests).

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail.
    """
    config = config or RetryConfig()
    backoff = config.initial_backoff

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except retryable_exceptions as e:
            if attempt == config.max_retries:
                logger.error(f"{description}: all {config.max_retries} retries failed: {e}")
                raise

            logger.warning(
                f"{description}: attempt {attempt + 1}/{config.max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            sleep(backoff)
            backoff = min(backoff * config.backoff_multiplier, config.max_backoff)

    raise RuntimeError("Unexpected retry loop exit")
