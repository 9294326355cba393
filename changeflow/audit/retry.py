"""Changeflow – Bounded retry for transient audit store failures.

Audit reads and writes go through :func:`call_with_retry`. Only
:class:`AuditWriteError` instances flagged ``transient`` are retried;
every other error, and the last transient one, propagates to the caller.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from changeflow.core.errors import AuditWriteError
from changeflow.core.logging import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for audit store calls.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay_seconds: Delay before the second attempt; doubles for
            each further attempt.
        sleep: Sleep function, injectable for tests.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)


def calculate_retry_delay(base_delay_seconds: float, attempt_number: int) -> float:
    """Calculate exponential backoff delay with jitter.

    Returns delay in seconds for the retry following ``attempt_number``.
    """

    # Exponential backoff: base * 2^(attempt - 1)
    delay = base_delay_seconds * (2 ** (attempt_number - 1))
    # Add jitter: ±25%
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.0, delay + jitter)


def call_with_retry(fn: Callable[[], T], policy: RetryPolicy, *, operation: str) -> T:
    """Invoke ``fn`` retrying transient :class:`AuditWriteError` failures.

    Args:
        fn: Zero-argument callable performing one store operation.
        policy: Retry settings.
        operation: Short description used in log messages.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        AuditWriteError: When the failure is permanent or attempts are
            exhausted.
    """

    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except AuditWriteError as exc:
            if not exc.transient or attempt >= attempts:
                logger.error(
                    "audit %s failed after %d attempt(s): %s", operation, attempt, exc
                )
                raise
            delay = calculate_retry_delay(policy.base_delay_seconds, attempt)
            logger.warning(
                "audit %s failed (attempt %d/%d), retrying in %.2fs: %s",
                operation,
                attempt,
                attempts,
                delay,
                exc,
            )
            policy.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
