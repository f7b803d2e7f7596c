"""Token bucket rate limiting."""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket with continuous refill and smoothed waits.

    ``capacity`` tokens refill evenly over ``window_seconds``. A caller that
    finds the bucket short reserves its tokens anyway and sleeps for the time
    the deficit takes to refill, so bursts are paced out instead of rejected.
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize a full bucket."""
        if capacity <= 0 or window_seconds <= 0:
            raise ValueError("capacity and window_seconds must be positive")

        self.capacity = float(capacity)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    @property
    def seconds_per_token(self) -> float:
        return self.window_seconds / self.capacity

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        self._tokens = min(self.capacity, self._tokens + elapsed / self.seconds_per_token)

    @property
    def available(self) -> float:
        """Tokens currently available (negative while callers are waiting)."""
        with self._lock:
            self._refill()
            return self._tokens

    def acquire(self, tokens: int = 1) -> float:
        """
        Take tokens, sleeping off any deficit.

        Args:
            tokens: Number of tokens to take

        Returns:
            Seconds slept (0.0 when tokens were available)
        """
        with self._lock:
            self._refill()
            self._tokens -= tokens
            deficit = -self._tokens

        if deficit <= 0:
            return 0.0

        delay = deficit * self.seconds_per_token
        logger.info(f"Rate limit reached, waiting {delay:.2f}s")
        self._sleep(delay)
        return delay

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens only if they are available right now."""
        with self._lock:
            self._refill()
            if self._tokens < tokens:
                return False
            self._tokens -= tokens
            return True
