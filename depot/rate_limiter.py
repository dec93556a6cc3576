"""
RateLimiter - Sliding-window limiter shared by all workers in a pool.
"""

import threading
import time
from collections import deque
from typing import Callable, Optional


class RateLimiter:
    """
    Allows at most max_calls acquisitions in any period-second window.
    """

    def __init__(
        self,
        max_calls: int = 10,
        period: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        if max_calls < 1 or period <= 0:
            raise ValueError("max_calls must be >= 1 and period > 0")
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._calls = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.period:
            self._calls.popleft()

    def try_acquire(self) -> Optional[float]:
        """
        Take a slot if one is free.

        Returns:
            None when a slot was taken, otherwise seconds until one frees up
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                return None
            return self.period - (now - self._calls[0])

    def acquire(self) -> None:
        """Block until a slot is free, then take it."""
        while True:
            wait = self.try_acquire()
            if wait is None:
                return
            self._sleep(max(wait, 0.0))
