"""
Fixed-window rate limiter keyed by (user id, action class).

Counters live in memory only. A window is reset lazily on the first check
after it expired; `sweep()` drops expired counters so idle users do not keep
memory forever.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from agencychat.config import (
    RATE_LIMIT_MESSAGES_PER_MINUTE,
    RATE_LIMIT_FILES_PER_MINUTE,
    RATE_LIMIT_WINDOW_SECONDS,
)

logger = logging.getLogger(__name__)

ACTION_CLASSES = ("message", "file")


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    def __init__(
        self,
        limits: Optional[dict[str, int]] = None,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = {
            "message": RATE_LIMIT_MESSAGES_PER_MINUTE,
            "file": RATE_LIMIT_FILES_PER_MINUTE,
        }
        if limits:
            self.limits.update(limits)
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[tuple[str, str], _Window] = {}

    def allow(self, user_id: str, action: str, limit: Optional[int] = None) -> bool:
        """Consume one unit of quota. Returns False when the window is exhausted."""
        if action not in ACTION_CLASSES:
            raise ValueError(f"Unknown action class '{action}'")
        max_count = limit if limit is not None else self.limits[action]
        if max_count < 1:
            return False
        now = self._clock()
        key = (user_id, action)
        current = self._windows.get(key)

        if current is None or now > current.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return True

        if current.count >= max_count:
            return False

        current.count += 1
        return True

    def retry_after(self, user_id: str, action: str) -> int:
        """Seconds until the current window for (user, action) resets; 0 when none is active."""
        current = self._windows.get((user_id, action))
        if current is None:
            return 0
        remaining = current.reset_at - self._clock()
        return max(0, int(remaining + 0.999))

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now > w.reset_at]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired rate-limit counters.")
        return len(expired)

    def reset(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._windows.clear()
            return
        for key in [k for k in self._windows if k[0] == user_id]:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)
