"""Admission control -- per-participant request windows.

Each key gets a window that opens on its first request and closes
window_seconds later. Thresholds can be reloaded at runtime; open windows
keep their counts. A periodic sweep evicts closed windows so idle
participants do not accumulate.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from clodds.errors import AdmissionDenied

logger = logging.getLogger(__name__)

GLOBAL_KEY = "global"


@dataclass
class RateLimitEntry:
    key: str
    window_start: float
    count: int = 0


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in: float  # seconds until the key's window closes


class RateLimiter:
    """Window counter keyed by participant id (or GLOBAL_KEY)."""

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        *,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0 or max_requests < 1:
            raise ValueError("window_seconds must be > 0 and max_requests >= 1")
        self._window = window_seconds
        self._max = max_requests
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._task: asyncio.Task | None = None

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def max_requests(self) -> int:
        return self._max

    def __len__(self) -> int:
        return len(self._entries)

    def check(self, key: str) -> RateLimitDecision:
        """Consume one request for key if the window has room."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None or now - entry.window_start >= self._window:
                entry = RateLimitEntry(key=key, window_start=now)
                self._entries[key] = entry

            reset_in = max(0.0, entry.window_start + self._window - now)
            if entry.count >= self._max:
                return RateLimitDecision(allowed=False, remaining=0, reset_in=reset_in)

            entry.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=self._max - entry.count,
                reset_in=reset_in,
            )

    def admit(self, key: str) -> RateLimitDecision:
        """check() that raises AdmissionDenied when over budget."""
        decision = self.check(key)
        if not decision.allowed:
            logger.info("Admission denied for %s (resets in %.1fs)", key, decision.reset_in)
            raise AdmissionDenied(key, decision.reset_in)
        return decision

    def reload(
        self,
        window_seconds: float | None = None,
        max_requests: int | None = None,
    ) -> bool:
        """Swap thresholds. Returns False when nothing changed.

        Entries whose window is still open keep their window_start and
        count, measured against the new thresholds from now on.
        """
        with self._lock:
            new_window = self._window if window_seconds is None else window_seconds
            new_max = self._max if max_requests is None else max_requests
            if new_window <= 0 or new_max < 1:
                raise ValueError("window_seconds must be > 0 and max_requests >= 1")
            if new_window == self._window and new_max == self._max:
                return False
            logger.info(
                "Rate limit reloaded: %d/%.1fs -> %d/%.1fs",
                self._max, self._window, new_max, new_window,
            )
            self._window = new_window
            self._max = new_max
            return True

    def sweep(self) -> int:
        """Evict entries whose window has fully elapsed. Returns the count."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.window_start >= self._window
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Rate limiter swept %d expired entries", len(expired))
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._sweep_loop(), name="rate-limit-sweep")
        logger.info(
            "Rate limiter started (%d requests / %.0fs, sweep every %.0fs)",
            self._max, self._window, self._sweep_interval,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._sweep_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Rate limiter sweep failed")
