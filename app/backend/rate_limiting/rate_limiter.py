"""
In-memory fixed-window rate limiter keyed by caller.

Guards the expensive, human-triggered operations (AI calls, writes). Counting
is per process, like the response cache.
"""
import math
import time
import threading
from dataclasses import dataclass
from typing import Callable, Dict

from errors import RateLimitExceededError
from settings import RateLimitPolicy


@dataclass
class RateWindow:
    count: int
    reset_at: float  # epoch milliseconds


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._windows: Dict[str, RateWindow] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def check(self, key: str, max_requests: int, window_ms: int) -> RateDecision:
        with self._lock:
            now = self._now_ms()
            window = self._windows.get(key)

            if window is None or now > window.reset_at:
                window = RateWindow(count=1, reset_at=now + window_ms)
                self._windows[key] = window
                return RateDecision(True, max_requests - 1, window.reset_at)

            if window.count >= max_requests:
                return RateDecision(False, 0, window.reset_at)

            window.count += 1
            return RateDecision(True, max_requests - window.count, window.reset_at)

    def enforce(self, key: str, policy: RateLimitPolicy) -> RateDecision:
        """Admit the call or raise RateLimitExceededError with the seconds until the window resets."""
        decision = self.check(key, policy.max_requests, policy.window_ms)
        if not decision.allowed:
            retry_after = math.ceil(max(0.0, decision.reset_at - self._now_ms()) / 1000)
            raise RateLimitExceededError(
                f"Rate limit exceeded. Max {policy.max_requests} requests per "
                f"{_describe_window(policy.window_ms)}.",
                retry_after=retry_after,
            )
        return decision

    def purge_expired(self) -> int:
        with self._lock:
            now = self._now_ms()
            doomed = [k for k, w in self._windows.items() if now > w.reset_at]
            for k in doomed:
                del self._windows[k]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


def _describe_window(window_ms: int) -> str:
    seconds = window_ms // 1000
    if seconds and seconds % 3600 == 0:
        hours = seconds // 3600
        return "hour" if hours == 1 else f"{hours} hours"
    if seconds and seconds % 60 == 0:
        minutes = seconds // 60
        return "minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds} seconds"
