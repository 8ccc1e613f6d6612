from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget attached to a stage consumer.

    attempt numbers are 1-based delivery counts. Once `max_attempts`
    deliveries have failed the message goes to `dead_letter` (a StageQueue),
    or stays on its queue for redelivery when no dead-letter target is set.
    """

    max_attempts: int = 3
    backoff_s: float = 5.0
    max_backoff_s: float = 300.0
    dead_letter: Optional[Any] = None

    def delay_for(self, attempt: int) -> float:
        attempt = max(1, int(attempt))
        return min(self.max_backoff_s, self.backoff_s * (2 ** (attempt - 1)))

    def exhausted(self, attempt: int) -> bool:
        return int(attempt) >= self.max_attempts


def sleep_jitter(base: float, jitter: float = 0.25) -> None:
    time.sleep(max(0.0, base + random.random() * jitter))


def with_retry(
    fn: Callable[[], T],
    *,
    retries: int = 1,
    backoff_s: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run fn() with up to `retries` extra attempts and exponential backoff."""
    for attempt in range(retries + 1):
        try:
            return fn()
        except retry_on:
            if attempt >= retries:
                raise
            sleep(backoff_s * (2 ** attempt))
    raise AssertionError("unreachable")
