import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from converge.errors import ProviderTransientError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delays(self):
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.multiplier


def retry_with_backoff(
    func: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, float, Exception], None]] = None,
) -> T:
    """
    Call func, retrying ProviderTransientError with exponential backoff.

    Any other exception propagates immediately. When attempts run out the
    last transient error is re-raised.
    """
    delays = policy.delays()
    attempt = 1
    while True:
        try:
            return func()
        except ProviderTransientError as exc:
            delay = next(delays, None)
            if delay is None:
                raise
            if on_retry is not None:
                on_retry(attempt, delay, exc)
            sleep(delay)
            attempt += 1
