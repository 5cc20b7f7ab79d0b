"""
Request rate limiting for price data providers.

Several settlement workers fetch price history in parallel, but the
upstream API only tolerates a fixed request budget.  A single
`TokenBucketRateLimiter` instance is shared by every provider call and
is the only synchronisation point between workers.  Tests inject a
`NoopRateLimiter` instead.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable


logger = logging.getLogger(__name__)


class NoopRateLimiter:
    """Limiter that never waits."""

    def acquire(self, tokens: float = 1.0) -> float:
        return 0.0


class TokenBucketRateLimiter:
    """Thread‑safe token bucket.

    Parameters
    ----------
    max_requests : int
        Bucket capacity, i.e. the burst size.
    window_seconds : float
        Time needed to refill a full bucket.  ``max_requests`` requests
        per ``window_seconds`` is the sustained rate.
    clock, sleep : callable
        Injected time source and sleep function, for testing.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.capacity = float(max_requests)
        self.refill_rate = max_requests / window_seconds
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            self._updated = now

    def acquire(self, tokens: float = 1.0) -> float:
        """Block until `tokens` are available and consume them.

        Returns
        -------
        float
            Total number of seconds spent waiting.
        """
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity}")
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                delay = (tokens - self._tokens) / self.refill_rate
            logger.debug("Rate limit reached, waiting %.3fs", delay)
            self._sleep(delay)
            waited += delay

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens
