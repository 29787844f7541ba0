"""
Per-IP request throttling for POST /device/code and the second-screen endpoints
(/device/authorize, /device/deny), to slow user_code guessing.
Device polling is not limited; the interval is advisory.

Sliding window of request times per key. Keys whose window has emptied are swept
at most once per window, so the table only holds clients seen in the last minute.
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


@dataclass
class _Window:
    seconds: int
    hits: deque = field(default_factory=deque)

    def prune(self, now: float) -> None:
        cutoff = now - self.seconds
        while self.hits and self.hits[0] <= cutoff:
            self.hits.popleft()


_windows: dict[str, _Window] = {}
_lock = threading.Lock()
_last_sweep = 0.0


def _sweep(now: float) -> None:
    global _last_sweep
    stale = []
    for key, window in _windows.items():
        window.prune(now)
        if not window.hits:
            stale.append(key)
    for key in stale:
        del _windows[key]
    _last_sweep = now
    if stale:
        logger.debug("Rate limit sweep dropped %d idle keys", len(stale))


def check_and_consume(key: str, limit: int, window_seconds: int = WINDOW_SECONDS) -> tuple[bool, int | None]:
    """
    Record one request for `key` if it is under `limit` within the window.
    Returns (allowed, retry_after_seconds); retry_after is None when allowed.
    """
    if limit <= 0:
        return True, None
    now = time.monotonic()
    with _lock:
        if now - _last_sweep >= WINDOW_SECONDS:
            _sweep(now)
        window = _windows.get(key)
        if window is None:
            window = _windows[key] = _Window(window_seconds)
        window.prune(now)
        if len(window.hits) >= limit:
            return False, max(1, math.ceil(window.seconds - (now - window.hits[0])))
        window.hits.append(now)
        return True, None


def tracked_keys() -> int:
    with _lock:
        return len(_windows)


def reset() -> None:
    """Forget all windows (tests)."""
    global _last_sweep
    with _lock:
        _windows.clear()
        _last_sweep = 0.0
