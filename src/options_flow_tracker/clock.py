"""Time source abstraction.

All pruning windows, watermarks and backfill ranges read "now" through a
``Clock`` so tests can drive time deterministically.
"""

from __future__ import annotations

import time
from typing import Protocol

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    """Wall clock in epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)
