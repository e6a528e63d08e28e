import threading
import time
from collections import deque
from typing import Callable, Deque, Dict


class RateLimiter:
    """Sliding-window limit of requests per user"""

    def __init__(self, max_requests: int = 10, window: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self.clock = clock
        self._requests: Dict[int, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, user_id: int) -> bool:
        now = self.clock()
        with self._lock:
            timestamps = self._requests.setdefault(user_id, deque())
            while timestamps and now - timestamps[0] >= self.window:
                timestamps.popleft()
            if len(timestamps) >= self.max_requests:
                return False
            timestamps.append(now)
            return True

    def cleanup(self):
        """Forget users without requests inside the window"""
        now = self.clock()
        with self._lock:
            for user_id in list(self._requests):
                timestamps = self._requests[user_id]
                while timestamps and now - timestamps[0] >= self.window:
                    timestamps.popleft()
                if not timestamps:
                    del self._requests[user_id]
