"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from options_flow_tracker.clock import DAY_MS
from options_flow_tracker.engine import EngineConfig, FlowEngine
from options_flow_tracker.ingestor.models import Instrument

NOW_MS = 1_750_000_000_000
EXPIRY_MS = NOW_MS + 30 * DAY_MS
EXPIRY_TAG = "30JUL25"
REFERENCE_PRICE = 60_000.0


class ManualClock:
    """Clock driven by the test."""

    def __init__(self, now_ms: int = NOW_MS) -> None:
        self._now = now_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: int) -> None:
        self._now += ms

    def set(self, now_ms: int) -> None:
        self._now = now_ms


def option_name(strike: int, is_call: bool = True) -> str:
    return f"BTC-{EXPIRY_TAG}-{strike}-{'C' if is_call else 'P'}"


def trade_row(
    trade_id: str,
    instrument: str,
    *,
    ts: int = NOW_MS,
    amount: float = 100.0,
    direction: str = "buy",
    price: float = 0.05,
    **extra: Any,
) -> dict[str, Any]:
    """A trade object shaped like Deribit's trades payload."""
    row = {
        "trade_id": trade_id,
        "instrument_name": instrument,
        "timestamp": ts,
        "amount": amount,
        "direction": direction,
        "price": price,
    }
    row.update(extra)
    return row


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic clock at NOW_MS."""
    return ManualClock()


@pytest.fixture
def instruments() -> list[Instrument]:
    """Calls and puts from 58000 to 62000 on a single expiry."""
    return [
        Instrument(name=option_name(k, c), expiry_ms=EXPIRY_MS, strike=float(k), is_call=c)
        for k in range(58_000, 62_001, 1_000)
        for c in (True, False)
    ]


@pytest.fixture
def engine(clock: ManualClock, instruments: list[Instrument]) -> FlowEngine:
    """Engine with a fixed big unit of 10 and a 60k reference price."""
    eng = FlowEngine(clock, config=EngineConfig(manual_big_unit=10.0))
    eng.registry.load(instruments)
    eng.reference.update(REFERENCE_PRICE, NOW_MS)
    return eng
