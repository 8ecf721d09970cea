"""Base task classes with retry logic for Celery."""

import asyncio
import math
from typing import Any, Awaitable, Optional, Sequence, TypeVar

from celery import Task

from streamvault.core.config import settings

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior.

    Delays come from ``schedule`` when one is given (the last entry repeats
    past its end), otherwise from exponential backoff.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
        schedule: Optional[Sequence[float]] = None,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.schedule = list(schedule) if schedule else []

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before the attempt after ``attempt``.

        Args:
            attempt: The attempt that just failed (1-indexed).

        Returns:
            The delay in seconds.
        """
        if self.schedule:
            index = min(max(attempt, 1) - 1, len(self.schedule) - 1)
            return self.schedule[index]

        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Check whether another attempt follows a failed ``attempt``."""
        return attempt < self.max_attempts


# Default retry configurations for different job types
RETRY_CONFIGS = {
    "transcode": RetryConfig(
        max_attempts=settings.TRANSCODE_MAX_ATTEMPTS,
        schedule=settings.transcode_backoff_schedule,
    ),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
}


_worker_loop: Optional[asyncio.AbstractEventLoop] = None


def run_async(coro: Awaitable[T]) -> T:
    """Run a coroutine to completion on this worker process's event loop.

    The loop is reused across tasks so pooled database connections stay bound
    to the loop that opened them.
    """
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        _worker_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_worker_loop)
    return _worker_loop.run_until_complete(coro)


class BaseTaskWithRetry(Task):
    """Base Celery task with configurable retry delays."""

    abstract = True
    retry_config_name: str = "default"
    # Attempts are bounded by RetryConfig, not Celery's counter
    max_retries = None

    @property
    def retry_config(self) -> RetryConfig:
        """Get the retry configuration for this task."""
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    @property
    def current_attempt(self) -> int:
        """1-indexed attempt number of the running execution."""
        return (self.request.retries or 0) + 1

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        """Handle task failure - can be overridden for custom failure handling."""
        pass

    def retry_with_backoff(self, exc: Exception, attempt: int, countdown: Optional[float] = None) -> None:
        """Retry the task after the configured delay.

        Args:
            exc: The exception that caused the failure.
            attempt: The current attempt number (1-indexed).
            countdown: Delay already chosen by the caller, if any.

        Raises:
            MaxRetriesExceededError: If max attempts have been reached.
        """
        config = self.retry_config

        if not config.should_retry(attempt):
            raise self.MaxRetriesExceededError(
                f"Max retries ({config.max_attempts}) exceeded for task"
            )

        delay = config.calculate_delay(attempt) if countdown is None else countdown
        raise self.retry(exc=exc, countdown=delay)
