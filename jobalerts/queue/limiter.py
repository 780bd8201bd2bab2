"""Rolling-window rate limiter for worker job starts."""

import threading
import time
from collections import deque
from typing import Callable, Deque

from .models import Limiter


class RateLimiter:
    """Allow at most ``limiter.max`` acquisitions per ``limiter.duration_seconds``.

    The clock is injectable; it must be monotonic and return seconds.
    """

    def __init__(self, limiter: Limiter, clock: Callable[[], float] = time.monotonic) -> None:
        self.max = limiter.max
        self.duration_seconds = limiter.duration_seconds
        self._clock = clock
        self._starts: Deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.duration_seconds:
            self._starts.popleft()

    def try_acquire(self) -> bool:
        """Record a job start if the window has room."""
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._starts) >= self.max:
                return False
            self._starts.append(now)
            return True
