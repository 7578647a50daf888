"""
Rolling-window rate limiter for accepted captures.
"""

import threading
import time
from collections import deque
from collections.abc import Callable


class RollingRateLimiter:
    """
    Allow at most ``limit`` acquisitions in any ``window`` seconds.

    Rejected attempts are not queued and do not count against the window.

    Args:
        limit: Maximum acquisitions per window
        window: Window length in seconds
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        limit: int = 100,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        if window <= 0:
            raise ValueError(f"window must be > 0, got {window}")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._stamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _expire(self, now: float) -> None:
        cutoff = now - self.window
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def try_acquire(self) -> bool:
        """Record one acquisition if under the limit. Returns False when throttled."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._stamps) >= self.limit:
                return False
            self._stamps.append(now)
            return True

    def in_window(self) -> int:
        """Acquisitions counted in the current window."""
        with self._lock:
            self._expire(self._clock())
            return len(self._stamps)

    def retry_after(self) -> float:
        """Seconds until the next acquisition would succeed (0 if it would now)."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._stamps) < self.limit:
                return 0.0
            return max(0.0, self._stamps[0] + self.window - now)

    def reset(self) -> None:
        with self._lock:
            self._stamps.clear()
