"""Exponential backoff shared by job requeues and Celery task retries."""

import math
from typing import Any

from celery import Task


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


# Retry configurations for the scheduled tasks
RETRY_CONFIGS = {
    "lease_sweep": RetryConfig(max_attempts=3, initial_delay=5.0, max_delay=60.0, backoff_multiplier=2),
    "monthly_grant": RetryConfig(max_attempts=5, initial_delay=60.0, max_delay=1800.0, backoff_multiplier=2),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
}


class BaseTaskWithRetry(Task):
    """Base Celery task with exponential backoff retry logic."""

    abstract = True
    retry_config_name: str = "default"

    @property
    def retry_config(self) -> RetryConfig:
        """Get the retry configuration for this task."""
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    def retry_with_backoff(self, exc: Exception, attempt: int) -> Any:
        """Retry the task with exponential backoff.

        Args:
            exc: The exception that caused the failure.
            attempt: The current attempt number (1-indexed).

        Raises:
            MaxRetriesExceededError: If max attempts have been reached.
        """
        config = self.retry_config

        if attempt >= config.max_attempts:
            raise self.MaxRetriesExceededError(
                f"Max retries ({config.max_attempts}) exceeded for task {self.name}"
            )

        delay = config.calculate_delay(attempt)
        raise self.retry(exc=exc, countdown=delay, max_retries=config.max_attempts)
