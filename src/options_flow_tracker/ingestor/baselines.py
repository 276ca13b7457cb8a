"""Rolling trade-size baseline for the adaptive big-trade threshold.

Every print contributes an ``AmtSample``; the 98th percentile of the trailing
24h of absolute amounts decides which trades are "big".
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass

import numpy as np

from options_flow_tracker.clock import DAY_MS, Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AmtSample:
    ts: int
    abs_amount: float


@dataclass(frozen=True)
class BigTradeThresholdConfig:
    window_ms: int = DAY_MS
    min_samples: int = 200
    quantile: float = 0.98
    floor: int = 50
    round_to: int = 10
    manual_big_unit: float = 0.0


class BigTradeThreshold:
    """Adaptive "big trade" size cutoff.

    A configured manual unit > 0 always wins. Below ``min_samples`` the floor
    is returned. Otherwise the percentile is selected with ``numpy.partition``
    (no full sort), floored, then rounded up to a multiple of ``round_to``.
    """

    def __init__(self, clock: Clock, *, config: BigTradeThresholdConfig | None = None) -> None:
        self._clock = clock
        self._cfg = config or BigTradeThresholdConfig()
        self._manual = float(self._cfg.manual_big_unit)
        self._samples: deque[AmtSample] = deque()

    @property
    def manual_big_unit(self) -> float:
        return self._manual

    @manual_big_unit.setter
    def manual_big_unit(self, value: float) -> None:
        self._manual = max(0.0, float(value))

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def samples(self) -> list[AmtSample]:
        return list(self._samples)

    def record(self, ts_ms: int, amount: float) -> None:
        """Add one print to the rolling window; non-positive input is ignored."""
        a = abs(amount)
        if a <= 0 or ts_ms <= 0:
            return
        self._samples.append(AmtSample(ts=ts_ms, abs_amount=a))
        self._prune(ts_ms - self._cfg.window_ms)

    def restore(self, samples: list[AmtSample]) -> None:
        self._samples = deque(sorted(samples, key=lambda s: s.ts))

    def current_big_unit(self) -> float:
        if self._manual > 0:
            return self._manual

        self._prune(self._clock.now_ms() - self._cfg.window_ms)
        n = len(self._samples)
        unit = self._cfg.floor
        if n >= self._cfg.min_samples:
            values = np.fromiter((s.abs_amount for s in self._samples), dtype=np.float64, count=n)
            k = int(math.floor((n - 1) * self._cfg.quantile))
            pct = float(np.partition(values, k)[k])
            unit = max(self._cfg.floor, int(math.floor(pct + 0.5)))

        step = self._cfg.round_to
        return float(((unit + step - 1) // step) * step)

    def big_unit_for_backfill(self) -> float:
        """Pre-filter used by history fetches before the ledger's own gate."""
        return self._manual if self._manual > 0 else 1.0

    def is_big(self, amount: float) -> bool:
        return abs(amount) >= self.current_big_unit()

    def _prune(self, cutoff_ms: int) -> None:
        while self._samples and self._samples[0].ts < cutoff_ms:
            self._samples.popleft()
