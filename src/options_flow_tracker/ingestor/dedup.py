"""Sliding-window duplicate suppression keyed by id.

Used for trade ids (24h window, shared by the live stream and every backfill
pipeline) and for fired-signal keys (90s window).
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from options_flow_tracker.clock import DAY_MS

logger = logging.getLogger(__name__)


@dataclass
class DedupStats:
    total_checks: int = 0
    duplicates_detected: int = 0
    evicted: int = 0


class TradeDeduplicator:
    """Remembers ids for ``window_ms`` relative to the timestamp being checked.

    Entries live in a FIFO of ``(ts, id)`` plus a set for O(1) membership.
    Eviction pops from the front only, so memory stays proportional to one
    window of unique ids.
    """

    def __init__(self, *, window_ms: int = DAY_MS) -> None:
        self._window_ms = window_ms
        self._ids: set[str] = set()
        self._queue: deque[tuple[int, str]] = deque()
        self._stats = DedupStats()

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @property
    def stats(self) -> DedupStats:
        return self._stats

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, key: object) -> bool:
        return key in self._ids

    def is_duplicate(self, key: str, ts_ms: int) -> bool:
        """Return True if ``key`` was already seen; otherwise record it."""
        self._stats.total_checks += 1
        self._evict(ts_ms - self._window_ms)

        if key in self._ids:
            self._stats.duplicates_detected += 1
            logger.debug("Duplicate suppressed: %s ts=%d", key, ts_ms)
            return True

        self._ids.add(key)
        self._queue.append((ts_ms, key))
        return False

    def entries(self, since_ms: int = 0) -> list[tuple[int, str]]:
        """Remembered ``(ts, id)`` pairs with ``ts >= since_ms``, oldest first."""
        return sorted((ts, key) for ts, key in self._queue if ts >= since_ms)

    def restore(self, entries: list[tuple[int, str]]) -> None:
        """Seed the window from persisted ``(ts, id)`` pairs; ids already known are kept once."""
        for ts, key in sorted(entries):
            if key in self._ids:
                continue
            self._ids.add(key)
            self._queue.append((ts, key))

    def clear(self) -> None:
        self._ids.clear()
        self._queue.clear()

    def _evict(self, cutoff_ms: int) -> None:
        while self._queue and self._queue[0][0] < cutoff_ms:
            _, old = self._queue.popleft()
            self._ids.discard(old)
            self._stats.evicted += 1
