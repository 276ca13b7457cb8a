"""Last-known quotes and greeks per instrument, and aggressor inference."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from options_flow_tracker.ingestor.models import TickerUpdate

AGGRESSOR_TOLERANCE = 0.05  # fraction of the spread


class Aggressor(str, Enum):
    HIT_BID = "hit_bid"
    LIFT_ASK = "lift_ask"
    MID = "mid"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Nbbo:
    bid: float
    ask: float

    @property
    def is_valid(self) -> bool:
        return self.bid > 0 and self.ask > 0 and self.ask >= self.bid

    @property
    def mid(self) -> float:
        return 0.5 * (self.bid + self.ask)

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass(frozen=True)
class AggressorResult:
    aggressor: Aggressor
    bp_from_mid: float = 0.0


def classify_aggressor(nbbo: Nbbo | None, price: float) -> AggressorResult:
    """Infer which side initiated a print from the prevailing bid/ask.

    Boundaries are inclusive: a print exactly at ``bid - tol`` is a hit and
    a print exactly at mid is ``MID``.
    """
    if nbbo is None or not nbbo.is_valid or price <= 0:
        return AggressorResult(Aggressor.UNKNOWN)

    mid = nbbo.mid
    tol = AGGRESSOR_TOLERANCE * nbbo.spread
    bp = (price - mid) / mid * 10_000.0 if mid > 0 else 0.0

    if price <= nbbo.bid - tol:
        side = Aggressor.HIT_BID
    elif price >= nbbo.ask + tol:
        side = Aggressor.LIFT_ASK
    elif abs(price - mid) <= tol:
        side = Aggressor.MID
    else:
        side = Aggressor.HIT_BID if price < mid else Aggressor.LIFT_ASK
    return AggressorResult(side, bp)


class NbboStore:
    """Best bid/offer per instrument, last write wins, no history."""

    def __init__(self) -> None:
        self._quotes: dict[str, Nbbo] = {}

    def __len__(self) -> int:
        return len(self._quotes)

    def update(self, instrument: str, bid: float, ask: float) -> bool:
        """Store a quote; crossed or empty sides are ignored.

        Returns:
            True if the quote was stored.
        """
        quote = Nbbo(bid=bid, ask=ask)
        if not quote.is_valid:
            return False
        self._quotes[instrument] = quote
        return True

    def get(self, instrument: str) -> Nbbo | None:
        return self._quotes.get(instrument)

    def classify(self, instrument: str, price: float) -> AggressorResult:
        return classify_aggressor(self._quotes.get(instrument), price)


class GreeksCache:
    """Last delta and mark IV seen per instrument."""

    def __init__(self) -> None:
        self.last_delta: dict[str, float] = {}
        self.last_iv: dict[str, float] = {}

    def apply_ticker(self, ticker: TickerUpdate) -> None:
        if not ticker.instrument:
            return
        if ticker.delta is not None:
            self.last_delta[ticker.instrument] = ticker.delta
        if ticker.mark_iv > 0:
            self.last_iv[ticker.instrument] = ticker.mark_iv

    def delta(self, instrument: str) -> float:
        return self.last_delta.get(instrument, 0.0)

    def iv(self, instrument: str) -> float:
        return self.last_iv.get(instrument, 0.0)


@dataclass
class ReferencePrice:
    """Underlying reference price (perpetual index), 0 until first known."""

    price: float = 0.0
    updated_ms: int = 0

    def update(self, price: float, ts_ms: int) -> bool:
        if price <= 0:
            return False
        self.price = price
        self.updated_ms = ts_ms
        return True
