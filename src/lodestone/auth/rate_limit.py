"""In-memory fixed-window rate limiter for the public query path.

Each caller identity (``query:<project_id>``) gets a counter and a window
reset time. The map is guarded by a lock; a daemon thread purges expired
windows so the map stays bounded. Purging is best-effort: ``check()``
resets an expired window on access regardless.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one ``check()``.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window.
        reset_time: Epoch seconds at which the window ends.
        limit: Requests allowed per window.
    """

    allowed: bool
    remaining: int
    reset_time: float
    limit: int

    def headers(self) -> dict[str, str]:
        """``X-RateLimit-*`` response headers (reset rounded up to whole seconds)."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_time)),
        }


@dataclass
class _Window:
    count: int
    reset_time: float


class RateLimiter:
    """Thread-safe fixed-window counter keyed by caller identity.

    Args:
        max_requests: Requests allowed per window (default 60).
        window_seconds: Window length in seconds (default 60).
        clock: Returns the current time in epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._cleaner: threading.Thread | None = None

    def check(self, identity: str) -> RateLimitResult:
        """Count one request for *identity* and decide whether it is allowed.

        A denied request does not consume the window; the reported reset
        time is the window's original one.
        """
        now = self._clock()
        with self._lock:
            window = self._windows.get(identity)
            if window is None or now >= window.reset_time:
                window = _Window(count=1, reset_time=now + self.window_seconds)
                self._windows[identity] = window
                return RateLimitResult(
                    True, self.max_requests - 1, window.reset_time, self.max_requests
                )
            if window.count >= self.max_requests:
                return RateLimitResult(False, 0, window.reset_time, self.max_requests)
            window.count += 1
            return RateLimitResult(
                True,
                self.max_requests - window.count,
                window.reset_time,
                self.max_requests,
            )

    def purge_expired(self) -> int:
        """Drop windows whose reset time has passed; returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [k for k, w in self._windows.items() if now >= w.reset_time]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    # ------------------------------------------------------------------
    # Background cleanup
    # ------------------------------------------------------------------

    def start_cleanup(self, interval: float = 60.0) -> None:
        """Start the purge timer thread (no-op if already running)."""
        if self._cleaner is not None and self._cleaner.is_alive():
            return
        self._stop.clear()
        self._cleaner = threading.Thread(
            target=self._cleanup_loop,
            args=(interval,),
            name="lodestone-ratelimit-cleanup",
            daemon=True,
        )
        self._cleaner.start()

    def stop_cleanup(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._cleaner is not None:
            self._cleaner.join(timeout)
            self._cleaner = None

    def _cleanup_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                purged = self.purge_expired()
            except Exception:
                logger.warning("Rate limit cleanup failed", exc_info=True)
                continue
            if purged:
                logger.debug("Purged expired rate limit windows", extra={"purged": purged})
