"""Retry logic with exponential backoff.

This module provides:
- backoff_delay: delay before a given attempt
- is_retryable: which errors deserve another attempt
- retry_with_backoff: bounded retry loop around a callable
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from vouchersync.core.errors import NetworkError

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 5.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def backoff_delay(
    attempt: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay to wait after a failed attempt (1-based)."""
    return min(initial_backoff * backoff_multiplier ** (attempt - 1), max_backoff)


def is_retryable(error: Exception) -> bool:
    """Only timeouts, connection failures and 408/502/504 are retried."""
    return isinstance(error, NetworkError) and error.retryable


def retry_with_backoff(
    func: Callable[[], Any],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    should_retry: Callable[[Exception], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_attempts: Total attempts, the first one included.
        initial_backoff: Delay after the first failure, in seconds.
        max_backoff: Maximum delay between attempts.
        backoff_multiplier: Multiplier for each retry.
        should_retry: Decides whether an error is worth another attempt.
        sleep: Waits between attempts (may raise to abort).

    Returns:
        Result of the function.

    Raises:
        The error itself if it is not retryable, or the last error once all
        attempts are used.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except Exception as e:
            if not should_retry(e):
                raise
            if attempt == max_attempts:
                logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            delay = backoff_delay(attempt, initial_backoff, max_backoff, backoff_multiplier)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")
