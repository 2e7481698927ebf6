import time
from collections import deque
from typing import Callable, Deque, Dict

from .errors import RateLimited


class SlidingWindowLimiter:
    """
    Caps how many location submissions one client address may make per window.
    origin -> timestamps of accepted hits, oldest first
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.hits: Dict[str, Deque[float]] = {}

    def _prune(self, origin: str, now: float) -> Deque[float]:
        window = self.hits.get(origin)
        if window is None:
            return deque()
        while window and now - window[0] >= self.window_seconds:
            window.popleft()
        if not window:
            # idle clients leave no trace
            del self.hits[origin]
        return window

    def hit(self, origin: str) -> int:
        """Record one submission; raises RateLimited once the cap is reached."""
        now = self.clock()
        window = self._prune(origin, now)
        if len(window) >= self.max_requests:
            raise RateLimited()
        window.append(now)
        self.hits[origin] = window
        return self.max_requests - len(window)

    def remaining(self, origin: str) -> int:
        window = self._prune(origin, self.clock())
        return max(0, self.max_requests - len(window))

    def reset(self, origin: str = None) -> None:
        if origin is None:
            self.hits.clear()
        else:
            self.hits.pop(origin, None)
