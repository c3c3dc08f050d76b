from __future__ import annotations

import time
from collections import deque
from typing import Callable

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Sliding one-minute window of request timestamps, keyed per provider.

    Mutations never await, so one instance can be shared by concurrent tasks
    on the same event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, window_seconds: float = WINDOW_SECONDS):
        self._clock = clock
        self._window = window_seconds
        self._hits: dict[str, deque[float]] = {}

    def try_acquire(self, key: str, limit_per_minute: int) -> bool:
        if limit_per_minute <= 0:
            return True
        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self._window:
            hits.popleft()
        if len(hits) >= limit_per_minute:
            return False
        hits.append(now)
        return True

    def remaining(self, key: str, limit_per_minute: int) -> int:
        now = self._clock()
        hits = self._hits.get(key, deque())
        active = sum(1 for hit in hits if now - hit < self._window)
        return max(limit_per_minute - active, 0)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)
