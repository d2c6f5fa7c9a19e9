"""
Per-process sliding-window rate limiter.

In-memory only: counts reset on restart and are not shared between workers,
so limits are approximate under multi-process deployment. Hard usage limits
are enforced by the quota counters in the database, not here.
"""
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class SlidingWindowRateLimiter:
    """
    Allows at most `limit` hits per key within any `window_seconds` span.

    Keys idle for a whole window are swept at most once per window.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, List[float]] = {}
        self._last_sweep = clock()
        self._lock = Lock()

    def hit(self, key: str) -> RateLimitDecision:
        """Record a hit for key if under the limit; otherwise report the wait."""
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            kept = [t for t in self._hits.get(key, ()) if t > cutoff]
            if len(kept) >= self.limit:
                self._hits[key] = kept
                wait = self.window_seconds - (now - kept[0])
                return RateLimitDecision(False, max(1, math.ceil(wait)))
            kept.append(now)
            self._hits[key] = kept
            return RateLimitDecision(True)

    def _sweep(self, cutoff: float) -> None:
        """Drop keys whose newest hit is outside the window."""
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            self._hits.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
