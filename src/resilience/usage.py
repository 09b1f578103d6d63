"""Sliding one-minute window of outbound AI call timestamps."""

import threading
from collections import deque

WINDOW_MS = 60_000


class UsageWindow:
    """Multiset of call timestamps (epoch ms), pruned to the trailing window on access."""

    def __init__(self, window_ms: int = WINDOW_MS) -> None:
        self.window_ms = window_ms
        self._calls: deque[int] = deque()
        self._lock = threading.Lock()

    def record(self, timestamp_ms: int) -> None:
        with self._lock:
            self._calls.append(timestamp_ms)
            self._prune(timestamp_ms)

    def snapshot(self, now_ms: int) -> list[int]:
        """Return the sorted timestamps in ``(now_ms - window_ms, now_ms]``."""
        with self._lock:
            self._prune(now_ms)
            return sorted(ts for ts in self._calls if ts <= now_ms)

    def count(self, now_ms: int) -> int:
        with self._lock:
            self._prune(now_ms)
            return sum(1 for ts in self._calls if ts <= now_ms)

    def clear(self) -> None:
        with self._lock:
            self._calls.clear()

    def _prune(self, now_ms: int) -> None:
        cutoff = now_ms - self.window_ms
        # Out-of-order records are possible, so filter rather than pop from the left.
        if any(ts <= cutoff for ts in self._calls):
            self._calls = deque(ts for ts in self._calls if ts > cutoff)
