"""
Retry policy helpers for remote provider calls.

Attempt k (1-based) that fails with a transport error waits
``2**k * backoff_unit_sec`` before the next attempt.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..exceptions import TransportError


@dataclass
class RetryPolicy:
    """
    Configuration for remote call retry behavior.

    Attributes:
        max_attempts: Total attempts including the first (1 = no retries)
        backoff_unit_sec: Time unit multiplied by 2**attempt between attempts
        sleep: Sleep function (injectable for tests)
    """
    max_attempts: int = 3
    backoff_unit_sec: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            self.max_attempts = 1

    @classmethod
    def for_provider(cls, retries: Optional[int], default: "RetryPolicy") -> "RetryPolicy":
        """
        Policy for one provider: a provider-declared retry count overrides the
        engine default while keeping its backoff unit.
        """
        if retries is None:
            return default
        return cls(max_attempts=retries, backoff_unit_sec=default.backoff_unit_sec, sleep=default.sleep)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if a retry should be attempted.

        Args:
            error: Exception raised by the last attempt
            attempt: Attempt number that just failed (1-based)

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= self.max_attempts:
            return False

        # Only transport failures are retryable; provider-reported errors are final
        return isinstance(error, TransportError)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given failed attempt (1-based)."""
        return (2 ** attempt) * self.backoff_unit_sec

    def wait(self, attempt: int) -> float:
        """Wait for the backoff delay of the given attempt and return it."""
        delay = self.delay_for(attempt)
        if delay > 0:
            self.sleep(delay)
        return delay
