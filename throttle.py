import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from constants import RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_MS
from logging_config import get_logger

logger = get_logger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class AbuseThrottle:
    """Sliding-window limiter keyed by connection id.

    A connection may record at most max_events timestamps inside any trailing
    window_ms span. Denied calls are not recorded.
    """

    def __init__(
        self,
        max_events: int = RATE_LIMIT_MAX,
        window_ms: int = RATE_LIMIT_WINDOW_MS,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.max_events = max_events
        self.window_ms = window_ms
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def check(self, connection_id: str) -> bool:
        now = self._clock()
        with self._lock:
            window = self._windows.setdefault(connection_id, deque())
            while window and now - window[0] >= self.window_ms:
                window.popleft()

            if len(window) >= self.max_events:
                logger.warning(f"Rate limit exceeded for connection {connection_id}")
                return False

            window.append(now)
            return True

    def remove(self, connection_id: str):
        with self._lock:
            self._windows.pop(connection_id, None)

    def tracked(self) -> int:
        with self._lock:
            return len(self._windows)
