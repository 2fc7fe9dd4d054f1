import threading
import time
from typing import Callable, Dict, Optional, Tuple


class RateLimiter:
    """Fixed-window request counter per client key."""

    def __init__(self, max_requests: int, window_seconds: float,
                 clock: Optional[Callable[[], float]] = None) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock or time.monotonic
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> Tuple[bool, int, float]:
        """Count one request for ``key``.

        Returns (allowed, remaining, seconds until the window resets).
        """
        now = self.clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            # Drop expired windows so idle clients do not accumulate
            if len(self._windows) > 10000:
                self._windows = {
                    k: v for k, v in self._windows.items() if now - v[0] < self.window_seconds
                }
        reset_in = max(0.0, self.window_seconds - (now - started))
        return count <= self.max_requests, max(0, self.max_requests - count), reset_in
