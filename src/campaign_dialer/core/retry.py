"""Retry utilities with exponential backoff.

Provides the retry policies used across the dialer:
- Exponential backoff with optional jitter
- Transient-error classification for provider failures
- Per-job-type retry policies for the durable job queue

Usage:
    from campaign_dialer.core.retry import retry_async, RetryConfig

    result = await retry_async(client.get, url, config=RetryConfig(max_attempts=2))
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Substrings marking an error as worth retrying later
TRANSIENT_ERROR_KEYWORDS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "network",
    "busy",
    "temporary",
    "rate_limit",
    "rate limit",
)


def is_transient_error(error: BaseException | str | None) -> bool:
    """Check whether an error message looks like a transient failure.

    Provider errors carrying an explicit ``transient`` flag are trusted;
    everything else falls back to keyword matching on the message.
    """
    if error is None:
        return False
    transient = getattr(error, "transient", None)
    if transient is True:
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in TRANSIENT_ERROR_KEYWORDS)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # 10% jitter
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)
    non_retryable_exceptions: tuple[type[Exception], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (1-based)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )

        if self.jitter:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Check if exception should trigger retry.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, self.non_retryable_exceptions):
            return False

        return isinstance(exception, self.retryable_exceptions)


DEFAULT_RETRY_CONFIG = RetryConfig()


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int, float], None] | None = None,
    **kwargs: Any,
) -> T:
    """Execute async function with retry.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        on_retry: Optional callback on each retry
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        The last exception once attempts are exhausted or it is not retryable.
    """
    config = config or DEFAULT_RETRY_CONFIG
    attempt = 1

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                raise

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"Retry {attempt}/{config.max_attempts} for {getattr(func, '__name__', func)}: "
                f"{type(e).__name__}: {e}. Waiting {delay:.2f}s"
            )
            if on_retry:
                on_retry(e, attempt, delay)

            await asyncio.sleep(delay)
            attempt += 1


# =============================================================================
# Job Policies
# =============================================================================


@dataclass(frozen=True)
class JobPolicy:
    """Retry policy for one job type.

    ``max_attempts`` counts the first run. Backoff between runs is
    ``backoff_seconds * 2 ** (attempt - 1)`` when ``exponential`` is set,
    otherwise a fixed ``backoff_seconds``.
    """

    max_attempts: int = 1
    backoff_seconds: float = 0.0
    exponential: bool = True
    initial_delay_seconds: float = 0.0
    priority: int = 0

    def backoff(self, attempt: int) -> float:
        """Delay before the run following ``attempt`` (1-based)."""
        config = RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_seconds,
            max_delay=float("inf"),
            exponential_base=2.0 if self.exponential else 1.0,
            jitter=0.0,
        )
        return config.calculate_delay(attempt)


JOB_POLICIES: dict[str, JobPolicy] = {
    "make-call": JobPolicy(max_attempts=2, backoff_seconds=10.0),
    "analyze-call": JobPolicy(max_attempts=3, backoff_seconds=5.0),
    "retry-call": JobPolicy(max_attempts=1),
    "update-call-status": JobPolicy(
        max_attempts=2, backoff_seconds=1.0, initial_delay_seconds=1.0
    ),
    "process-callback": JobPolicy(max_attempts=1, initial_delay_seconds=2.0),
    "cleanup-stale-calls": JobPolicy(max_attempts=1, initial_delay_seconds=5.0),
}


def get_job_policy(name: str) -> JobPolicy:
    """Get the retry policy for a job type (single attempt when unknown)."""
    return JOB_POLICIES.get(name, JobPolicy())
