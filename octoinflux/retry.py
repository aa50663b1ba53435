"""Retry policy shared by every network call site.

This module handles:
- Exponential backoff with an upper bound and jitter
- Bounded attempts, surfacing the last error once they run out
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryError(Exception):
    """Raised when an operation kept failing until the attempts ran out.

    Attributes:
        last_error: The exception raised by the final attempt
        attempts: Number of attempts made
    """

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        jitter: Random fraction of the delay added on top (0.1 = up to 10%)
    """
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("Delays and jitter must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Return the delay to wait before retry number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    def call(
        self,
        operation: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...],
        description: str = "request",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Run ``operation``, retrying the exceptions listed in ``retry_on``.

        Args:
            operation: Zero-argument callable performing one attempt
            retry_on: Exception types that count as transient
            description: Human readable name used in log messages
            sleep: Sleep function (injectable for tests)

        Returns:
            Whatever the first successful attempt returned

        Raises:
            RetryError: If every attempt failed with a transient error
        """
        last_error: BaseException = RuntimeError("no attempt made")

        for attempt in range(self.max_attempts):
            if attempt > 0:
                delay = self.delay_for(attempt)
                logger.info(f"Retrying {description} ({attempt}/{self.max_attempts - 1}) after {delay:.1f}s delay")
                sleep(delay)

            try:
                return operation()
            except retry_on as e:
                last_error = e
                logger.warning(f"{description} failed (attempt {attempt + 1}): {e}")

        raise RetryError(last_error, self.max_attempts)
