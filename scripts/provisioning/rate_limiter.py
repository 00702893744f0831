"""Minimum-interval rate limiter for account service calls."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger("provisioning.rate_limiter")


class RateLimiter:
    """Block until ``min_interval_s`` has passed since the previous call.

    An interval of 0 disables throttling. ``defer`` pushes the next call
    further out, e.g. to honour a server's Retry-After. ``clock`` and
    ``sleep`` are injectable so tests run without real delays.
    """

    def __init__(
        self,
        min_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval_s < 0:
            raise ValueError("min_interval_s must not be negative")
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._not_before: Optional[float] = None

    @classmethod
    def from_millis(cls, interval_ms: int, **kwargs) -> "RateLimiter":
        return cls(interval_ms / 1000.0, **kwargs)

    def defer(self, seconds: float) -> None:
        """Hold the next call back for at least ``seconds`` from now."""
        if seconds <= 0:
            return
        not_before = self._clock() + seconds
        if self._not_before is None or not_before > self._not_before:
            self._not_before = not_before

    def wait(self) -> float:
        """Sleep as needed, then mark a call. Returns the time slept."""
        ready_at = None
        if self._last_call is not None and self.min_interval_s > 0:
            ready_at = self._last_call + self.min_interval_s
        if self._not_before is not None:
            ready_at = self._not_before if ready_at is None else max(ready_at, self._not_before)
            self._not_before = None

        slept = 0.0
        if ready_at is not None:
            remaining = ready_at - self._clock()
            if remaining > 0:
                logger.debug("Throttling account service call for %.3fs", remaining)
                self._sleep(remaining)
                slept = remaining
        self._last_call = self._clock()
        return slept
