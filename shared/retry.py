"""
Retry with linear backoff.

Every multi-attempt remote call in the client goes through attempt_with_retry()
with a RetryPolicy, so the backoff math lives in one place:

    policy = RetryPolicy(max_retries=2, base_delay=1.0, retry_on=(ErrorKind.NETWORK,))
    identity = attempt_with_retry(lambda: remote.sign_up(email, password), policy)
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from .errors import ErrorKind, RemoteConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_retries: extra attempts after the first one
        base_delay: seconds; the wait before retry n is n * base_delay
        retry_on: error kinds worth retrying, None retries every exception
    """
    max_retries: int
    base_delay: float = 1.0
    retry_on: Optional[Tuple[ErrorKind, ...]] = None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int) -> float:
        return max(attempt, 0) * self.base_delay

    def should_retry(self, error: Exception) -> bool:
        if self.retry_on is None:
            return True
        kind = getattr(error, "kind", None)
        return kind in self.retry_on

    def with_base_delay(self, base_delay: float) -> "RetryPolicy":
        return RetryPolicy(self.max_retries, base_delay, self.retry_on)


NETWORK_ONLY = (ErrorKind.NETWORK,)


def attempt_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
    on_retry: Callable[[Exception, int, float], None] = None,
) -> T:
    """
    Call fn until it succeeds, the policy refuses the error, or the retry
    budget is spent. The last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as error:
            attempt += 1
            if attempt > policy.max_retries or not policy.should_retry(error):
                raise

            delay = policy.backoff(attempt)
            logger.warning(
                f"{label} failed (attempt {attempt}/{policy.max_attempts}): {error}; "
                f"retrying in {delay:.1f}s"
            )
            if on_retry:
                on_retry(error, attempt, delay)
            sleep(delay)


def tolerate_conflict(fn: Callable[[], T], label: str = "insert") -> Callable[[], Optional[T]]:
    """Wrap an insert so a duplicate-key conflict counts as success."""
    def wrapped():
        try:
            return fn()
        except RemoteConflict:
            logger.info(f"{label}: record already exists, continuing")
            return None
    return wrapped
