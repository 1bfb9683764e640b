"""Bounded retry shared by tool fetches and service-state waits.

One implementation, parameterized per call site:

- ``call`` retries a callable that raises, up to ``max_attempts``.
- ``poll`` re-evaluates a predicate until it holds or attempts run out.

Delay is fixed unless ``backoff`` > 1, in which case it grows
geometrically and is capped at ``max_delay``.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt count and delay schedule for one kind of external call."""

    max_attempts: int = 3
    delay: float = 2.0
    backoff: float = 1.0
    max_delay: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)
        if self.delay < 0:
            msg = f"delay must be >= 0, got {self.delay}"
            raise ValueError(msg)

    @classmethod
    def for_timeout(
        cls,
        timeout: float,
        interval: float,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> RetryPolicy:
        """Fixed-interval polling that gives up after roughly *timeout* seconds."""
        attempts = max(1, math.ceil(timeout / interval) + 1) if interval > 0 else 1
        return cls(max_attempts=attempts, delay=interval, sleep=sleep)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed *attempt*."""
        return min(self.delay * (self.backoff ** (attempt - 1)), self.max_delay)

    def call(
        self,
        fn: Callable[[], _T],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        label: str = "operation",
    ) -> _T:
        """Call *fn* until it returns; re-raise the last error when exhausted."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except retry_on as exc:
                if attempt == self.max_attempts:
                    logger.warning("%s failed after %d attempts: %s", label, attempt, exc)
                    raise
                wait = self.delay_for(attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s); retrying in %.1fs",
                    label,
                    attempt,
                    self.max_attempts,
                    exc,
                    wait,
                )
                self.sleep(wait)
        raise AssertionError("unreachable")  # pragma: no cover

    def poll(self, predicate: Callable[[], bool]) -> bool:
        """Return True as soon as *predicate* holds, False if it never does."""
        for attempt in range(1, self.max_attempts + 1):
            if predicate():
                return True
            if attempt < self.max_attempts:
                self.sleep(self.delay_for(attempt))
        return False
