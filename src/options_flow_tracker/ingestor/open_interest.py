"""Open interest per option cluster, fed from the bulk book summary."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from options_flow_tracker.ingestor.instruments import InstrumentRegistry
from options_flow_tracker.ingestor.models import BookSummary

logger = logging.getLogger(__name__)

OIKey = tuple[int, int, bool]


class OpenInterestStore:
    """Open interest keyed by ``(expiry_ms, strike, is_call)``."""

    def __init__(self) -> None:
        self._oi: dict[OIKey, float] = {}

    def __len__(self) -> int:
        return len(self._oi)

    @staticmethod
    def _key(expiry_ms: int, strike: float, is_call: bool) -> OIKey:
        return (int(expiry_ms), int(round(strike)), bool(is_call))

    def set_oi(self, expiry_ms: int, strike: float, is_call: bool, oi: float) -> None:
        self._oi[self._key(expiry_ms, strike, is_call)] = float(oi)

    def get_oi(self, expiry_ms: int, strike: float, is_call: bool) -> float:
        return self._oi.get(self._key(expiry_ms, strike, is_call), 0.0)

    def compute_ratio(self, expiry_ms: int, is_call: bool, my_by_strike: Mapping[float, float]) -> float:
        """Largest |residual| / open interest across strikes that have OI."""
        best = 0.0
        for strike, my in my_by_strike.items():
            oi = self.get_oi(expiry_ms, strike, is_call)
            if oi > 0:
                best = max(best, abs(my) / oi)
        return best

    def apply_book_summary(self, rows: Iterable[BookSummary], registry: InstrumentRegistry) -> int:
        """Load a book summary snapshot; rows for unknown expiries are skipped.

        Returns:
            Number of rows stored.
        """
        stored = 0
        for row in rows:
            expiry = registry.expiry_of(row.instrument)
            strike = registry.strike_of(row.instrument)
            if expiry <= 0 or strike <= 0:
                continue
            self.set_oi(expiry, strike, registry.is_call(row.instrument), row.open_interest)
            stored += 1
        logger.debug("Open interest updated: %d rows", stored)
        return stored
