"""
Fixed-window request counter keyed by client IP.

State lives in this process only: it is lost on restart and is not shared
between instances. A multi-instance deployment needs a shared store.
"""
import time
from typing import Callable, Dict


class RateLimiter:
    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 15 * 60,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.enabled = enabled
        self._clock = clock
        # ip -> {"count": int, "start": float}
        self._hits: Dict[str, dict] = {}
        self._last_sweep = clock()

    def __len__(self):
        return len(self._hits)

    def hit(self, key: str) -> bool:
        """Count one request for `key`. Returns False once the window is exhausted."""
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)

        record = self._hits.get(key)
        if record is None or now - record["start"] >= self.window_seconds:
            self._hits[key] = {"count": 1, "start": now}
            return True

        if record["count"] >= self.max_requests:
            return False
        record["count"] += 1
        return True

    def _sweep(self, now: float):
        # runs at most once per window
        expired = [k for k, r in self._hits.items() if now - r["start"] >= self.window_seconds]
        for key in expired:
            del self._hits[key]
        self._last_sweep = now

    def reset(self):
        self._hits.clear()
        self._last_sweep = self._clock()
