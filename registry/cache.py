"""Self-limiting cache for VIN decode results.

There is no per-entry expiry and no LRU ordering. ``sweep`` is a coarse
housekeeping check: at most once per interval, the whole cache is dropped
if it has grown past ``max_entries``. Decoded VINs do not change, so
staleness is not a concern; only memory is.
"""
from __future__ import annotations

import logging
import threading
from datetime import timedelta

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class DecodeCache:
    """VIN -> decoded attributes, owned by one registry client."""

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        sweep_interval: timedelta = timedelta(hours=1),
        clock: Clock | None = None,
    ) -> None:
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self.clock = clock or SystemClock()
        self._entries: dict[str, dict[str, str]] = {}
        self._last_sweep = self.clock.now()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, vin: str) -> bool:
        return vin in self._entries

    def get(self, vin: str) -> dict[str, str] | None:
        with self._lock:
            cached = self._entries.get(vin)
        # Callers get their own copy so the cached entry stays untouched
        return dict(cached) if cached is not None else None

    def put(self, vin: str, attributes: dict[str, str]) -> None:
        with self._lock:
            self._entries[vin] = dict(attributes)

    def sweep(self) -> bool:
        """Run housekeeping if the interval has elapsed.

        Returns:
            True if the cache was cleared
        """
        now = self.clock.now()
        with self._lock:
            if now - self._last_sweep < self.sweep_interval:
                return False

            cleared = False
            if len(self._entries) > self.max_entries:
                logger.info(f"Clearing VIN decode cache ({len(self._entries)} entries > {self.max_entries})")
                self._entries = {}
                cleared = True

            self._last_sweep = now
            return cleared

    def clear(self) -> None:
        with self._lock:
            self._entries = {}
