"""Bounded retries for provider HTTP calls.

Both the per-request retry below and the render poll schedule in
``video_jobs`` grow their delays with :func:`backoff_delay`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import httpx


T = TypeVar("T")

LOGGER = logging.getLogger("studio.retry")

RETRYABLE_STATUS_CODES = frozenset({429})


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0


class NonRetryableError(Exception):
    """The call failed in a way another attempt would not fix."""


class MaxRetriesExceeded(Exception):
    """Every attempt failed with a transient error."""


def backoff_delay(attempt: int, initial_delay: float, multiplier: float, max_delay: float) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based), capped at ``max_delay``."""
    exponent = max(attempt, 1) - 1
    return min(initial_delay * multiplier**exponent, max_delay)


def _env_number(name: str, default, minimum, cast):
    # Unparseable values fall back to the default; out-of-range values are clamped.
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return max(minimum, cast(raw_value))
    except ValueError:
        return default


def retry_config_from_env(prefix: str = "STUDIO_RETRY_") -> RetryConfig:
    """Read ``<prefix>MAX_ATTEMPTS``, ``INITIAL_DELAY``, ``MAX_DELAY`` and ``BACKOFF_MULTIPLIER``."""
    initial_delay = _env_number(f"{prefix}INITIAL_DELAY", 2.0, 0.0, float)
    return RetryConfig(
        max_attempts=_env_number(f"{prefix}MAX_ATTEMPTS", 3, 1, int),
        initial_delay=initial_delay,
        max_delay=max(_env_number(f"{prefix}MAX_DELAY", 30.0, 0.0, float), initial_delay),
        backoff_multiplier=_env_number(f"{prefix}BACKOFF_MULTIPLIER", 2.0, 1.0, float),
    )


def _is_retryable_error(error: Exception) -> bool:
    """Transport failures, 429 and 5xx responses are worth another attempt."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        return code in RETRYABLE_STATUS_CODES or 500 <= code < 600
    return False


def with_retry(
    operation: Callable[[], T],
    config: Optional[RetryConfig] = None,
    operation_name: str = "operation",
) -> T:
    """
    Call ``operation`` until it succeeds, sleeping between transient failures.

    Raises:
        NonRetryableError: on the first error that is not transient
        MaxRetriesExceeded: when ``config.max_attempts`` attempts all failed
    """
    active = config or retry_config_from_env()
    last_error: Optional[Exception] = None

    for attempt in range(1, active.max_attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if not _is_retryable_error(exc):
                raise NonRetryableError(f"{operation_name} failed: {exc}") from exc
            last_error = exc

        if attempt == active.max_attempts:
            break
        delay = backoff_delay(attempt, active.initial_delay, active.backoff_multiplier, active.max_delay)
        LOGGER.warning(
            "retry.scheduled",
            extra={
                "operation": operation_name,
                "attempt": attempt,
                "max_attempts": active.max_attempts,
                "delay_seconds": round(delay, 2),
                "error": str(last_error),
            },
        )
        time.sleep(delay)

    message = f"{operation_name} failed after {active.max_attempts} attempts"
    if last_error is not None:
        message += f": {last_error}"
    raise MaxRetriesExceeded(message) from last_error
