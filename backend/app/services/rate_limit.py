from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int


class FixedWindowRateLimiter:
    """Per-key request counter over fixed windows.

    State lives in process memory, so limits hold per server instance only.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = max(1, limit)
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[str, tuple[int, float]] = {}

    def check(self, key: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            count, reset_at = self._windows.get(key, (0, now + self.window_seconds))
            if count >= self.limit:
                return RateLimitResult(allowed=False, remaining=0)
            count += 1
            self._windows[key] = (count, reset_at)
            return RateLimitResult(allowed=True, remaining=self.limit - count)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
        for key in expired:
            del self._windows[key]
