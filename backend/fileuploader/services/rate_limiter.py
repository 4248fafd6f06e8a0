import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from fileuploader.core.security import AuthClaims

logger = logging.getLogger(__name__)


class _Window:
    __slots__ = ("lock", "timestamps", "detached")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.timestamps: deque[float] = deque()
        self.detached = False

    def prune(self, cutoff: float) -> None:
        timestamps = self.timestamps
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()


class SlidingWindowRateLimiter:
    """Sliding-log limiter: at most ``limit`` accepted calls per key in any
    trailing ``window_seconds`` interval.

    Each key owns a window with its own lock, so callers for different keys
    never wait on each other. The registry lock is held only to look up or
    create a window.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sweep_every: int = 1024,
    ) -> None:
        if limit < 1:
            raise ValueError("Rate limit must be at least 1 request per window")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._registry_lock = threading.Lock()
        self._sweep_every = sweep_every
        self._calls_since_sweep = 0

    def allow(self, key: str) -> bool:
        self._maybe_sweep()
        while True:
            window = self._window_for(key)
            with window.lock:
                if window.detached:
                    continue
                now = self._clock()
                window.prune(now - self.window_seconds)
                if len(window.timestamps) >= self.limit:
                    return False
                window.timestamps.append(now)
                return True

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` may be accepted again; 0 if it may be now."""
        with self._registry_lock:
            window = self._windows.get(key)
        if window is None:
            return 0.0
        with window.lock:
            now = self._clock()
            window.prune(now - self.window_seconds)
            if len(window.timestamps) < self.limit:
                return 0.0
            return max(0.0, window.timestamps[0] + self.window_seconds - now)

    def sweep(self) -> int:
        """Drop windows with no timestamps left in the trailing interval."""
        removed = 0
        with self._registry_lock:
            cutoff = self._clock() - self.window_seconds
            for key, window in list(self._windows.items()):
                if not window.lock.acquire(blocking=False):
                    continue
                try:
                    window.prune(cutoff)
                    if not window.timestamps:
                        window.detached = True
                        del self._windows[key]
                        removed += 1
                finally:
                    window.lock.release()
        if removed:
            logger.debug("Swept %d idle rate limit windows", removed)
        return removed

    def window_count(self) -> int:
        with self._registry_lock:
            return len(self._windows)

    def _window_for(self, key: str) -> _Window:
        with self._registry_lock:
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = _Window()
            return window

    def _maybe_sweep(self) -> None:
        with self._registry_lock:
            self._calls_since_sweep += 1
            if self._calls_since_sweep < self._sweep_every:
                return
            self._calls_since_sweep = 0
        self.sweep()


def rate_limit_key(claims: AuthClaims | None, client_host: str | None) -> str:
    if claims is not None and claims.subject_id:
        return f"subject:{claims.subject_id}"
    if client_host:
        return f"client:{client_host}"
    return "anonymous"
