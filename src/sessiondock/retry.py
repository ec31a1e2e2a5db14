"""Bounded retries for steps that may need a moment to settle.

Used for re-checking key authentication after an install; sshd can take a
short while to honour a freshly written ``authorized_keys`` line.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


class RecoverableError(Exception):
    """The attempt failed but a later one may succeed."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def backoff_schedule(self) -> Iterator[float]:
        """Yield the sleep before each attempt after the first."""
        delay = self.initial_backoff_seconds
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_backoff_seconds)
            delay *= self.multiplier


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    if policy.max_attempts < 1:
        raise RuntimeError("RetryPolicy.max_attempts must be at least 1.")

    delays = policy.backoff_schedule()
    attempt = 1
    while True:
        try:
            return operation()
        except RecoverableError as exc:
            delay = next(delays, None)
            if delay is None:
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay)
            attempt += 1
