"""Per-process fixed-window rate limiter for AI requests.

Best-effort burst absorber in front of the quota engine. Not shared across
instances and never authoritative: any internal error lets the request through.
"""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from quotagate.core.config import settings
from quotagate.core.logging import log_event
from quotagate.core import metrics


class FixedWindowLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: float = 60,
        sweep_seconds: float = 300,
        time_fn: Optional[Callable[[], float]] = None,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.sweep_seconds = sweep_seconds
        self.time_fn = time_fn or time.monotonic
        self.windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._last_sweep = self.time_fn()

    def allow(self, key: str) -> bool:
        try:
            return self._allow(key)
        except Exception:
            log_event("warning", "ratelimit.error", user_id=key, event_type="ratelimit.fail_open")
            return True

    def _allow(self, key: str) -> bool:
        now = self.time_fn()
        with self._lock:
            if now - self._last_sweep >= self.sweep_seconds:
                self._sweep(now)
            window_start, count = self.windows.get(key, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0
            if count >= self.limit:
                self.windows[key] = (window_start, count)
                return False
            self.windows[key] = (window_start, count + 1)
            return True

    def _sweep(self, now: float) -> None:
        stale = [key for key, (start, _) in self.windows.items() if now - start >= self.window_seconds]
        for key in stale:
            del self.windows[key]
        self._last_sweep = now
        metrics.ai_rate_limiter_tracked_users.set(len(self.windows))

    def reset(self) -> None:
        with self._lock:
            self.windows.clear()
            self._last_sweep = self.time_fn()


_ai_limiter: Optional[FixedWindowLimiter] = None


def get_ai_limiter() -> FixedWindowLimiter:
    global _ai_limiter
    if _ai_limiter is None:
        _ai_limiter = FixedWindowLimiter(
            settings.AI_RATE_LIMIT_MAX,
            settings.AI_RATE_LIMIT_WINDOW_SECONDS,
            settings.AI_RATE_LIMIT_SWEEP_SECONDS,
        )
    return _ai_limiter


def reset_ai_limiter() -> None:
    """Drop the process limiter so the next call rebuilds it from settings."""
    global _ai_limiter
    _ai_limiter = None


def allow_ai_request(user_id: str) -> bool:
    if not settings.AI_RATE_LIMIT_ENABLED:
        return True
    allowed = get_ai_limiter().allow(user_id)
    if not allowed:
        metrics.ai_rate_limited_total.inc()
    return allowed
