# src/llmfleet/resilience/rate_limiter.py
"""
Token-bucket admission control shared by every outgoing call.

The bucket holds at most `requests_per_second` tokens and is refilled to
capacity at the start of every one-second window (interval refill, no
carry-over), so no burst larger than one window's capacity is possible.

`try_consume()` never blocks. `acquire()` is the cooperative wrapper used by
async callers: it re-polls after a short fixed delay instead of parking a
thread.

Usage:
    limiter = RateLimiter(requests_per_second=5)
    if limiter.try_consume():
        ...
    await limiter.acquire()
"""

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_WAIT_INTERVAL_SECONDS = 0.1


class RateLimiter:
    """
    Classic token bucket with interval refill.

    Args:
        requests_per_second: Bucket capacity and tokens added per window.
        window_seconds: Refill window length.
        wait_interval: Delay between re-polls in `acquire()`, in seconds.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep function, injectable for tests.
    """

    def __init__(
        self,
        requests_per_second: int,
        window_seconds: float = 1.0,
        wait_interval: float = DEFAULT_WAIT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.capacity = int(requests_per_second)
        self.window_seconds = float(window_seconds)
        self.wait_interval = float(wait_interval)
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._lock = threading.Lock()
        self._tokens = self.capacity
        self._window_start = self._clock()

    def _refill(self) -> None:
        # Caller holds self._lock.
        now = self._clock()
        elapsed = now - self._window_start
        if elapsed >= self.window_seconds:
            windows = int(elapsed // self.window_seconds)
            self._tokens = min(self.capacity, self._tokens + windows * self.capacity)
            self._window_start += windows * self.window_seconds

    def try_consume(self) -> bool:
        """Takes one token if available. Returns False when the bucket is empty."""
        with self._lock:
            self._refill()
            if self._tokens > 0:
                self._tokens -= 1
                return True
            return False

    @property
    def available_tokens(self) -> int:
        with self._lock:
            self._refill()
            return self._tokens

    async def acquire(self) -> None:
        """Waits cooperatively until a token is consumed."""
        waited = 0
        while not self.try_consume():
            if waited == 0:
                logger.debug("Rate limit reached, delaying request")
            waited += 1
            await self._sleep(self.wait_interval)
        if waited:
            logger.debug(f"Rate limiter admitted request after {waited} re-polls")
