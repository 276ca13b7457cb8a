"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class Side(str, Enum):
    """Aggressor direction reported by the venue."""

    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1

    @classmethod
    def from_direction(cls, direction: Any) -> Side:
        return cls.BUY if str(direction).lower() == "buy" else cls.SELL


@dataclass(frozen=True)
class TradeEvent:
    """A single option execution (live print or historical row)."""

    trade_id: str
    instrument: str
    timestamp_ms: int
    amount: float
    price: float
    side: Side
    delta: float = 0.0
    iv: float = 0.0

    @classmethod
    def from_deribit(cls, data: dict[str, Any], *, delta: float = 0.0) -> TradeEvent:
        """Create a TradeEvent from a Deribit trade object.

        The same shape is delivered by ``trades.*`` subscriptions and by
        ``public/get_last_trades_by_instrument_and_time``. Deribit trades
        carry no greeks, so the caller supplies the last known delta.

        Raises:
            KeyError: If ``trade_id`` or ``instrument_name`` is missing.
        """
        return cls(
            trade_id=str(data["trade_id"]),
            instrument=str(data["instrument_name"]),
            timestamp_ms=int(data.get("timestamp") or 0),
            amount=abs(_to_float(data.get("amount"))),
            price=_to_float(data.get("price")),
            side=Side.from_direction(data.get("direction", "")),
            delta=delta,
            iv=_to_float(data.get("iv")),
        )

    @property
    def sign(self) -> int:
        return self.side.sign

    @property
    def is_buy(self) -> bool:
        return self.side is Side.BUY


@dataclass(frozen=True)
class Instrument:
    """Listed option contract metadata from ``public/get_instruments``."""

    name: str
    expiry_ms: int
    strike: float
    is_call: bool
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Instrument:
        name = str(data["instrument_name"])
        option_type = str(data.get("option_type", "")).lower()
        strike = _to_float(data.get("strike"))
        if strike <= 0:
            strike = parse_strike(name)
        return cls(
            name=name,
            expiry_ms=int(data.get("expiration_timestamp") or 0),
            strike=strike,
            is_call=option_type == "call" if option_type else is_call_name(name),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class TickerUpdate:
    """Quote and greeks for one instrument (``ticker.*`` or ``public/ticker``)."""

    instrument: str
    best_bid: float = 0.0
    best_ask: float = 0.0
    delta: float | None = None
    mark_iv: float = 0.0
    index_price: float = 0.0
    last_price: float = 0.0
    timestamp_ms: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, instrument: str | None = None) -> TickerUpdate:
        greeks = data.get("greeks") or {}
        delta = greeks.get("delta") if isinstance(greeks, dict) else None
        return cls(
            instrument=str(data.get("instrument_name") or instrument or ""),
            best_bid=_to_float(data.get("best_bid_price")),
            best_ask=_to_float(data.get("best_ask_price")),
            delta=_to_float(delta) if delta is not None else None,
            mark_iv=_to_float(data.get("mark_iv")),
            index_price=_to_float(data.get("index_price")),
            last_price=_to_float(data.get("last_price")),
            timestamp_ms=int(data.get("timestamp") or 0),
        )

    @property
    def reference_price(self) -> float:
        """Index price when published, otherwise the last traded price."""
        return self.index_price if self.index_price > 0 else self.last_price


@dataclass(frozen=True)
class BookSummary:
    """One row of ``public/get_book_summary_by_currency``."""

    instrument: str
    open_interest: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BookSummary:
        return cls(
            instrument=str(data["instrument_name"]),
            open_interest=_to_float(data.get("open_interest")),
        )


def parse_strike(name: str) -> float:
    """Strike from an instrument name like ``BTC-27DEC24-50000-C``; 0 if unparsable."""
    parts = name.split("-")
    if len(parts) < 4:
        return 0.0
    return _to_float(parts[2])


def is_call_name(name: str) -> bool:
    return name.endswith("-C")
