"""
Retry policy configuration for action execution.

Only failures classified as transient are retried; permanent failures and
upstream failures propagate immediately.
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class RetryPolicy:
    """
    Configuration for retry behavior when an action fails transiently.

    Implements exponential backoff with jitter.

    Examples:
        >>> # Basic retry with defaults
        >>> policy = RetryPolicy(max_attempts=3)

        >>> # Treat connection errors raised by an engine as transient
        >>> policy = RetryPolicy(
        ...     max_attempts=5,
        ...     initial_delay=2.0,
        ...     max_delay=60.0,
        ...     retryable_exceptions=(ConnectionError,),
        ... )
    """

    # Maximum number of retry attempts (total executions = max_attempts + 1)
    max_attempts: int = 3

    # Initial delay before first retry (seconds)
    initial_delay: float = 1.0

    # Maximum delay between retries (seconds)
    max_delay: float = 30.0

    # Exponential backoff base (delay = initial_delay * base^attempt)
    exponential_base: float = 2.0

    # Add random jitter to prevent thundering herd (±25% of delay)
    jitter: bool = True

    # Extra exception types raised by an engine that count as transient.
    # TransientError and TimeoutError always do.
    retryable_exceptions: tuple[type[Exception], ...] = ()

    # Custom retry condition, consulted for transient failures only
    # Signature: (message: str, attempt: int) -> bool
    retry_condition: Callable[[str, int], bool] | None = None

    def __post_init__(self):
        """Validate configuration."""
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.exponential_base < 1.0:
            raise ValueError("exponential_base must be >= 1.0")

    def should_retry(self, transient: bool, attempt: int, message: str = "") -> bool:
        """
        Determine if we should retry after a failed attempt.

        Args:
            transient: Whether the failure was classified transient
            attempt: Current attempt number (0-indexed)
            message: Failure message, passed to ``retry_condition``

        Returns:
            True if we should retry, False otherwise
        """
        if not transient:
            return False

        if attempt >= self.max_attempts:
            return False

        if self.retry_condition is not None:
            return self.retry_condition(message, attempt)

        return True

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before next retry using exponential backoff.

        Implements: delay = min(initial_delay * base^attempt, max_delay)
        With optional jitter: delay * random(0.75, 1.25)

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = self.initial_delay * (self.exponential_base**attempt)

        if self.jitter:
            delay *= random.uniform(0.75, 1.25)

        # Cap after jitter so max_delay is a hard upper bound
        return min(delay, self.max_delay)


@dataclass
class RetryState:
    """
    Retry history for one action execution.

    Kept on the action outcome for reporting.
    """

    # Action (node) name being retried
    action_name: str

    # Current attempt number (0-indexed)
    attempt: int = 0

    # Total attempts so far
    total_attempts: int = 0

    # Failures encountered, one entry per failed attempt
    failures: list[dict[str, Any]] = field(default_factory=list)

    # Delays between attempts
    delays: list[float] = field(default_factory=list)

    # Whether execution succeeded
    succeeded: bool = False

    def record_attempt(self, failure: str | None = None, kind: str | None = None):
        """Record an attempt and its result."""
        self.total_attempts += 1
        if failure is not None:
            self.failures.append(
                {
                    "attempt": self.attempt,
                    "kind": kind,
                    "message": failure,
                    "timestamp": time.time(),
                }
            )

    def record_delay(self, delay: float):
        """Record the delay before next retry."""
        self.delays.append(delay)


# Pre-configured policies for common scenarios

DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    initial_delay=1.0,
    max_delay=30.0,
    exponential_base=2.0,
    jitter=True,
)

FAST_RETRY_POLICY = RetryPolicy(
    max_attempts=2,
    initial_delay=0.1,
    max_delay=1.0,
    exponential_base=2.0,
    jitter=False,
)

NO_RETRY_POLICY = RetryPolicy(max_attempts=0)
