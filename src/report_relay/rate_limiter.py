"""Sliding-window admission control for outbound uploads."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable


class SlidingWindowRateLimiter:
    """Bounds the number of sends in any trailing window.

    A successful ``try_admit`` reserves a slot under the lock, so concurrent
    uploads cannot all pass admission against the same free slot. The
    reservation turns into a timestamped send through ``record_send``, or is
    handed back through ``release`` when nothing was delivered. Stale entries
    are evicted lazily on every check. Limits are local to this process.
    """

    def __init__(
        self,
        max_per_window: int,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_per_window <= 0:
            msg = f"max_per_window must be positive, got {max_per_window}"
            raise ValueError(msg)
        self.max_per_window = max_per_window
        self.window = window
        self._clock = clock
        self._sends: deque[float] = deque()
        self._reserved = 0
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window
        while self._sends and self._sends[0] <= cutoff:
            self._sends.popleft()

    def try_admit(self) -> bool:
        """Reserve a slot for one send.

        Returns:
            True if the send may proceed now. The caller must then call
            ``record_send`` or ``release``.

        """
        with self._lock:
            self._evict(self._clock())
            if len(self._sends) + self._reserved >= self.max_per_window:
                return False
            self._reserved += 1
            return True

    def record_send(self) -> None:
        """Record a completed send at the current time, consuming a reservation."""
        with self._lock:
            if self._reserved:
                self._reserved -= 1
            self._sends.append(self._clock())

    def release(self) -> None:
        """Give back a reservation whose send did not happen."""
        with self._lock:
            if self._reserved:
                self._reserved -= 1

    def retry_after(self) -> float:
        """Seconds until the next admission can succeed.

        Returns 0 when a slot is free, or when only sends still in progress
        hold the window; their completion time is unknown.
        """
        with self._lock:
            now = self._clock()
            self._evict(now)
            excess = len(self._sends) + self._reserved - self.max_per_window
            if excess < 0 or excess >= len(self._sends):
                return 0.0
            return max(0.0, self._sends[excess] + self.window - now)

    def in_window(self) -> int:
        """Sends recorded in the current window plus reservations in progress."""
        with self._lock:
            self._evict(self._clock())
            return len(self._sends) + self._reserved
