"""
In-memory sliding-window rate limiting for the public search endpoints.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Tuple


class SlidingWindowLimiter:
    """
    Per-key sliding window kept in process memory. Good enough for a single
    web process; every process keeps its own window.
    """

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.time):
        self.limit = int(limit)
        self.window_seconds = int(window_seconds)
        self._clock = clock
        self._state: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.limit > 0 and self.window_seconds > 0

    def allow(self, key: str) -> bool:
        allowed, _ = self.allow_with_remaining(key)
        return allowed

    def allow_with_remaining(self, key: str) -> Tuple[bool, int]:
        """Returns (allowed, remaining_after)."""
        if not self.enabled:
            return True, self.limit
        now = self._clock()
        window_start = now - self.window_seconds
        with self._lock:
            history = [t for t in self._state.get(key, []) if t > window_start]
            if len(history) >= self.limit:
                self._state[key] = history
                return False, 0
            history.append(now)
            self._state[key] = history
            return True, max(0, self.limit - len(history))


def client_key(request, scope: str) -> str:
    ip = request.client.host if request is not None and request.client else "unknown"
    return f"{scope}:{ip}"


__all__ = ["SlidingWindowLimiter", "client_key"]
