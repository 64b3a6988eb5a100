import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = int(os.getenv("CHECKOUT_MAX_ATTEMPTS", "3"))
    base_delay: float = float(os.getenv("CHECKOUT_BACKOFF_SECONDS", "1.0"))
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.base_delay * (self.multiplier ** (attempt - 1))


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


def retry_with_backoff(
    operation: Callable[[], T],
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """
    Run operation until it succeeds, waiting base_delay * multiplier**n
    between attempts.

    Non-retryable errors propagate immediately. When every attempt fails
    with a retryable error, RetryExhausted wraps the last one.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt == policy.max_attempts:
                logger.error(
                    "%s failed after %s attempts: %s",
                    description,
                    policy.max_attempts,
                    exc,
                )
                raise RetryExhausted(attempt, exc) from exc

            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %s/%s). Retrying in %.1f seconds...",
                description,
                attempt,
                policy.max_attempts,
                delay,
            )
            sleep(delay)

    raise ValueError("RetryPolicy.max_attempts must be at least 1")
