"""Fixed-window rate limiter for outbound workspace calls."""

import asyncio
import threading
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator

# Units already taken by the dispatcher for the task running in this context
_prepaid_units: ContextVar[list[int] | None] = ContextVar("prepaid_units", default=None)


class RateLimiter:
    """Bounds calls to ``max_requests_per_window`` per ``window_duration_ms``.

    The limiter knows nothing about tasks; any caller may use it as a
    capacity gate. All state changes happen under a lock so concurrent
    callers never overspend the budget.
    """

    def __init__(
        self,
        max_requests_per_window: int = 3,
        window_duration_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests_per_window < 1:
            raise ValueError("max_requests_per_window must be >= 1")
        if window_duration_ms < 1:
            raise ValueError("window_duration_ms must be >= 1")

        self._max_requests = max_requests_per_window
        self._window = window_duration_ms / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start: float | None = None
        self._count = 0

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window

    def _roll(self, now: float) -> None:
        # caller holds the lock
        if self._window_start is None or now - self._window_start >= self._window:
            self._window_start = now
            self._count = 0

    def try_acquire(self) -> bool:
        """Consume one unit of budget if available. Never blocks."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count < self._max_requests:
                self._count += 1
                return True
            return False

    def release(self) -> None:
        """Give back a unit taken in the current window but never used."""
        with self._lock:
            self._roll(self._clock())
            if self._count > 0:
                self._count -= 1

    async def acquire(self) -> None:
        """Wait for one unit of budget.

        Inside ``prepaid()`` the unit the dispatcher already took is
        spent first, so a task's first request costs nothing extra and
        follow-up requests (429 retries, recreate after 404) each wait
        for their own unit.
        """
        units = _prepaid_units.get()
        if units and units[0] > 0:
            units[0] -= 1
            return
        while not self.try_acquire():
            await asyncio.sleep(max(self.time_until_available(), 0.001))

    @contextmanager
    def prepaid(self, units: int = 1) -> Iterator[None]:
        """Mark ``units`` as already paid for calls made in this context."""
        token = _prepaid_units.set([units])
        try:
            yield
        finally:
            _prepaid_units.reset(token)

    def next_available_at(self) -> float:
        """Clock reading at which the next ``try_acquire`` can succeed."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count < self._max_requests:
                return now
            return self._window_start + self._window

    def time_until_available(self) -> float:
        """Seconds until ``try_acquire`` can succeed (0 when budget is left)."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count < self._max_requests:
                return 0.0
            return max(self._window_start + self._window - now, 0.0)

    def remaining(self) -> int:
        """Calls left in the current window."""
        with self._lock:
            self._roll(self._clock())
            return self._max_requests - self._count

    def get_status(self) -> dict[str, float | int]:
        return {
            "max_requests": self._max_requests,
            "window_seconds": self._window,
            "remaining": self.remaining(),
        }
