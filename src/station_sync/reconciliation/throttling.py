"""
Rate limiting for external station sources.

Each source class has its own minimum interval between requests. Slots are
reserved under a lock and waited for outside it, so concurrent callers of the
same class are spaced out without holding the lock while sleeping.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from ..utils.errors import RunCancelled
from .base import RateLimiter
from .models import SourceClass


logger = logging.getLogger(__name__)


DEFAULT_INTERVALS: Mapping[SourceClass, float] = {
    SourceClass.GEOCODER: 1.0,
    SourceClass.DETAIL_REGISTRY: 0.5,
    SourceClass.NAME_REGISTRY: 0.2,
}

STALE_AFTER_S = 3600.0


class CancellationToken:
    """
    Cooperative cancellation flag shared by a run and its workers.

    Checked at every suspension point. `wait` doubles as an interruptible
    sleep.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled("Run was cancelled")

    def wait(self, timeout: float) -> None:
        """Sleep up to `timeout` seconds; raise RunCancelled if cancelled meanwhile."""
        if timeout > 0 and self._event.wait(timeout):
            raise RunCancelled("Run was cancelled")
        self.raise_if_cancelled()


class SourceRateLimiter(RateLimiter):
    """
    Per-source-class minimum-interval rate limiter.

    Thread-safe. N back-to-back acquisitions of one class span at least
    (N - 1) * interval seconds. Waiters are not served in FIFO order.
    """

    def __init__(
        self,
        intervals: Optional[Mapping[SourceClass, float]] = None,
        stale_after_s: float = STALE_AFTER_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the rate limiter.

        Args:
            intervals: Per-class minimum interval in seconds (merged over defaults)
            stale_after_s: Classes unused for this long are forgotten
            clock: Monotonic clock, injectable for tests
        """
        merged: Dict[SourceClass, float] = dict(DEFAULT_INTERVALS)
        if intervals:
            merged.update(intervals)
        for source_class, interval in merged.items():
            if interval < 0:
                raise ValueError(f"interval for {source_class} must be >= 0")

        self.intervals = merged
        self.stale_after_s = stale_after_s
        self._clock = clock
        self._last_slot: Dict[SourceClass, float] = {}
        self._last_sweep = clock()
        self._total_wait_s = 0.0
        self._acquisitions = 0
        self.lock = threading.Lock()

    def interval_for(self, source_class: SourceClass) -> float:
        return self.intervals.get(source_class, 0.0)

    def _reserve(self, source_class: SourceClass) -> float:
        """Reserve the next slot for `source_class` and return how long to wait."""
        with self.lock:
            now = self._clock()
            if now - self._last_sweep >= self.stale_after_s:
                self._sweep_locked(now)

            last = self._last_slot.get(source_class)
            slot = now if last is None else max(now, last + self.interval_for(source_class))
            self._last_slot[source_class] = slot

            wait = slot - now
            self._total_wait_s += wait
            self._acquisitions += 1
            return wait

    def acquire(
        self,
        source_class: SourceClass,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        wait = self._reserve(source_class)
        if wait > 0:
            logger.debug(f"Rate limit: waiting {wait:.2f}s for {source_class}")
            if cancel_token is not None:
                cancel_token.wait(wait)
            else:
                time.sleep(wait)

    def _sweep_locked(self, now: float) -> int:
        stale = [
            source_class
            for source_class, slot in self._last_slot.items()
            if now - slot > self.stale_after_s
        ]
        for source_class in stale:
            del self._last_slot[source_class]
        self._last_sweep = now
        if stale:
            logger.debug(f"Dropped rate-limit tracking for {len(stale)} idle source(s)")
        return len(stale)

    def sweep_stale(self) -> int:
        """Forget classes unused for longer than `stale_after_s`. Returns how many."""
        with self.lock:
            return self._sweep_locked(self._clock())

    def status(self) -> dict:
        with self.lock:
            return {
                "tracked_sources": sorted(str(c) for c in self._last_slot),
                "intervals": {str(c): i for c, i in self.intervals.items()},
                "acquisitions": self._acquisitions,
                "total_wait_s": round(self._total_wait_s, 3),
            }

    def reset_statistics(self) -> None:
        with self.lock:
            self._total_wait_s = 0.0
            self._acquisitions = 0


class NoOpRateLimiter(RateLimiter):
    """
    Rate limiter that does nothing (for testing/development).

    Still honours cancellation.
    """

    def acquire(
        self,
        source_class: SourceClass,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

    def status(self) -> dict:
        return {"tracked_sources": [], "intervals": {}, "acquisitions": 0, "total_wait_s": 0.0}
