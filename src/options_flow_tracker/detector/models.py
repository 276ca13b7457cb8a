"""Data models for flow detection: cluster identity, residuals, bursts, signals."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

DEFAULT_BUCKET_WIDTH = 1000


@dataclass(frozen=True, order=True)
class ClusterKey:
    """Economic cluster: one expiry, one option type, one strike bucket."""

    expiry_ms: int
    is_call: bool
    strike_bucket: int

    @classmethod
    def of(cls, expiry_ms: int, is_call: bool, strike: float, bucket_width: int = DEFAULT_BUCKET_WIDTH) -> ClusterKey:
        return cls(
            expiry_ms=int(expiry_ms),
            is_call=bool(is_call),
            strike_bucket=int(math.floor(strike / bucket_width + 0.5) * bucket_width),
        )

    def to_string(self) -> str:
        """Stable text form ``"<expiry>|<1|0>|<bucket>"`` used in snapshots."""
        return f"{self.expiry_ms}|{1 if self.is_call else 0}|{self.strike_bucket}"

    @classmethod
    def parse(cls, text: str) -> ClusterKey:
        """Inverse of ``to_string``.

        Raises:
            ValueError: If the text does not have three numeric fields.
        """
        parts = text.split("|")
        if len(parts) != 3:
            raise ValueError(f"Invalid cluster key: {text!r}")
        try:
            return cls(
                expiry_ms=int(parts[0]),
                is_call=int(parts[1]) == 1,
                strike_bucket=int(round(float(parts[2]))),
            )
        except OverflowError as e:
            raise ValueError(f"Invalid cluster key: {text!r}") from e

    def __str__(self) -> str:
        return self.to_string()


@dataclass
class ResidualPosition:
    """Running large-trade flow estimate for one cluster.

    ``qty`` is not floored: a negative value means accumulated selling.
    """

    qty: float = 0.0
    signed_qty: float = 0.0
    delta_weighted_volume: float = 0.0
    last_trade_ts: int = 0
    trade_count: int = 0
    participants: set[str] = field(default_factory=set)

    def copy(self) -> ResidualPosition:
        return ResidualPosition(
            qty=self.qty,
            signed_qty=self.signed_qty,
            delta_weighted_volume=self.delta_weighted_volume,
            last_trade_ts=self.last_trade_ts,
            trade_count=self.trade_count,
            participants=set(self.participants),
        )

    @property
    def avg_abs_delta(self) -> float:
        q = abs(self.qty)
        return abs(self.delta_weighted_volume) / q if q > 1e-12 else 0.0


@dataclass
class FlowBurst:
    """Transient accumulation of same-side big trades near one strike."""

    start_ts: int
    last_ts: int
    is_buy: bool
    is_call: bool
    center_strike: float
    qty_sum: float = 0.0
    dvol_sum: float = 0.0
    trade_count: int = 0
    instruments: set[str] = field(default_factory=set)
    first_instrument: str = ""


@dataclass(frozen=True)
class Signal:
    """Displayable row for a cluster whose residual flow is material.

    Quantities come from the cluster's residual position; direction,
    strength and pattern come from the burst (or residual projection) that
    produced the row. ``anchor_ts`` is fixed the first time the row appears.
    """

    key: ClusterKey
    anchor_ts: int
    is_buy: bool
    direction: int
    strong: bool
    strike: float
    residual_qty: float
    avg_abs_delta: float
    abs_dvol: float
    notional: float
    trade_count: int
    unique_instruments: int
    last_trade_ts: int = 0

    @property
    def expiry_ms(self) -> int:
        return self.key.expiry_ms

    @property
    def is_call(self) -> bool:
        return self.key.is_call

    @property
    def pattern(self) -> str:
        side = "Buy" if self.is_buy else "Sell"
        cp = "Call" if self.is_call else "Put"
        return f"{side} streak ({cp})"

    @property
    def details(self) -> str:
        return f"trades {self.trade_count} / instruments {self.unique_instruments}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for Redis stream publishing."""
        return {
            "key": self.key.to_string(),
            "expiry_ms": self.expiry_ms,
            "is_call": self.is_call,
            "anchor_ts": self.anchor_ts,
            "direction": self.direction,
            "strong": self.strong,
            "pattern": self.pattern,
            "strike": self.strike,
            "residual_qty": self.residual_qty,
            "avg_abs_delta": self.avg_abs_delta,
            "abs_dvol": self.abs_dvol,
            "notional": self.notional,
            "trade_count": self.trade_count,
            "unique_instruments": self.unique_instruments,
            "last_trade_ts": self.last_trade_ts,
        }


@dataclass(frozen=True)
class LegDetail:
    """One big trade as it contributed to a cluster."""

    ts: int
    key: ClusterKey
    instrument: str
    sign: int
    amount: float
    est_delta: float
    price: float
    aggressor: str
    expiry_ms: int
    strike: float
    is_call: bool
    nbbo_bid: float
    nbbo_ask: float
    mid: float
    bp_from_mid: float
    trade_iv: float
    trade_id: str
    venue: str = "Deribit"

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts,
            "key": self.key.to_string(),
            "instrument": self.instrument,
            "sign": self.sign,
            "amount": self.amount,
            "est_delta": self.est_delta,
            "price": self.price,
            "aggressor": self.aggressor,
            "venue": self.venue,
            "expiry_ms": self.expiry_ms,
            "strike": self.strike,
            "is_call": self.is_call,
            "nbbo_bid": self.nbbo_bid,
            "nbbo_ask": self.nbbo_ask,
            "mid": self.mid,
            "bp_from_mid": self.bp_from_mid,
            "trade_iv": self.trade_iv,
            "trade_id": self.trade_id,
        }
