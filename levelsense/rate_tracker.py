"""Message-rate tracking for degraded-link detection."""

import time
from typing import Callable, Optional

# Below this many messages/s the link is flagged as degraded (device sends ~5/s)
LOW_RATE_THRESHOLD = 3


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class MessageRateTracker:
    """
    Counts accepted frames and emits a rate roughly once per second.

    The rate is sampled on a rolling ~1 s cadence: the counter is emitted and
    reset the first time a frame arrives at least `window_ms` after the last
    emission. It is not an instantaneous rate.
    """

    def __init__(self, window_ms: int = 1000, clock: Optional[Callable[[], int]] = None):
        self.window_ms = window_ms
        self._clock = clock or _wall_clock_ms
        self._count = 0
        self._last_emit_ms = self._clock()
        self.rate = 0

    def record(self, now_ms: Optional[int] = None) -> Optional[int]:
        """
        Count one frame.

        Args:
            now_ms: Arrival time in ms (None = tracker clock)

        Returns:
            The newly emitted rate, or None if the window has not closed yet
        """
        now = self._clock() if now_ms is None else now_ms
        self._count += 1
        if now - self._last_emit_ms >= self.window_ms:
            self.rate = self._count
            self._count = 0
            self._last_emit_ms = now
            return self.rate
        return None

    def reset(self, now_ms: Optional[int] = None) -> None:
        """Forget the counter and the last emitted rate."""
        self._count = 0
        self._last_emit_ms = self._clock() if now_ms is None else now_ms
        self.rate = 0

    @property
    def pending(self) -> int:
        """Frames counted since the last emission."""
        return self._count


def is_low_rate(rate: int, threshold: int = LOW_RATE_THRESHOLD) -> bool:
    """True when data is arriving but slower than `threshold` messages/s."""
    return 0 < rate < threshold
