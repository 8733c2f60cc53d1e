"""Bounded, thread-safe history of processed orientations."""

import threading
from collections import deque
from typing import Deque, List, Optional, Tuple

from .orientation import ProcessedOrientation

# 300 points at ~100 ms spacing is the last 30 s of roll
DEFAULT_MAX_POINTS = 300

Entry = Tuple[int, ProcessedOrientation]


class ReadingHistory:
    """Thread-safe buffer of (timestamp_ms, ProcessedOrientation)."""

    def __init__(self, maxlen: int = DEFAULT_MAX_POINTS):
        self._buf: Deque[Entry] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def append(self, timestamp_ms: int, orientation: ProcessedOrientation) -> None:
        with self._lock:
            self._buf.append((timestamp_ms, orientation))

    def get_all(self) -> List[Entry]:
        with self._lock:
            return list(self._buf)

    def get_recent(self, now_ms: int, window_ms: int) -> List[Entry]:
        cutoff = now_ms - window_ms
        with self._lock:
            out: List[Entry] = []
            for t, item in reversed(self._buf):
                if t >= cutoff:
                    out.append((t, item))
                else:
                    break
            out.reverse()
            return out

    def roll_span(self) -> Optional[Tuple[float, float]]:
        """(min, max) roll over the buffer, None when empty."""
        with self._lock:
            if not self._buf:
                return None
            rolls = [item.roll for _, item in self._buf]
        return min(rolls), max(rolls)

    def clear(self) -> None:
        with self._lock:
            self._buf.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buf)
