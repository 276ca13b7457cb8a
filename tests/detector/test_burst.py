"""Tests for burst detection and signal firing."""

from unittest.mock import patch

from conftest import NOW_MS, option_name

from options_flow_tracker.engine import FlowEngine
from options_flow_tracker.ingestor.models import Side, TradeEvent

CALL = option_name(60_000)


def make_trade(
    trade_id: str,
    *,
    instrument: str = CALL,
    ts: int = NOW_MS,
    amount: float = 10.0,
    side: Side = Side.BUY,
    delta: float = 0.01,
) -> TradeEvent:
    return TradeEvent(
        trade_id=trade_id,
        instrument=instrument,
        timestamp_ms=ts,
        amount=amount,
        price=0.05,
        side=side,
        delta=delta,
    )


def feed(engine: FlowEngine, trades: list[TradeEvent]) -> list:
    return [engine.process_trade(t).signal for t in trades]


class TestBurstDetector:
    """Tests for BurstDetector through the engine (big unit 10)."""

    def test_fires_at_five_units(self, engine: FlowEngine) -> None:
        """With a tiny reported delta only the 5x quantity rule applies."""
        signals = feed(engine, [make_trade(f"T{i}", ts=NOW_MS + i * 1_000) for i in range(5)])

        assert signals[:4] == [None] * 4
        fired = signals[4]
        assert fired is not None
        assert fired.pattern == "Buy streak (Call)"
        assert fired.residual_qty == 50.0
        assert fired.anchor_ts == NOW_MS
        assert fired.trade_count == 5
        assert engine.bursts.open_bursts == []

    def test_no_fire_below_thresholds(self, engine: FlowEngine) -> None:
        signals = feed(engine, [make_trade(f"T{i}", ts=NOW_MS + i) for i in range(4)])

        assert signals == [None] * 4
        assert len(engine.bursts.open_bursts) == 1
        assert engine.bursts.open_bursts[0].qty_sum == 40.0

    def test_fires_on_delta_volume(self, engine: FlowEngine) -> None:
        """Four 10-lots at delta 0.5 reach 2x the unit in delta-weighted volume."""
        signals = feed(engine, [make_trade(f"T{i}", ts=NOW_MS + i, delta=0.5) for i in range(4)])

        assert signals[3] is not None
        assert signals[3].direction == 1

    def test_small_trades_ignored(self, engine: FlowEngine) -> None:
        feed(engine, [make_trade(f"T{i}", amount=9.0, ts=NOW_MS + i) for i in range(20)])

        assert engine.bursts.open_bursts == []

    def test_sides_do_not_mix(self, engine: FlowEngine) -> None:
        trades = [make_trade(f"B{i}", ts=NOW_MS + i) for i in range(3)]
        trades += [make_trade(f"S{i}", ts=NOW_MS + 10 + i, side=Side.SELL) for i in range(3)]

        assert feed(engine, trades) == [None] * 6
        assert len(engine.bursts.open_bursts) == 2

    def test_far_strike_opens_new_burst(self, engine: FlowEngine) -> None:
        feed(engine, [make_trade("A", ts=NOW_MS), make_trade("B", instrument=option_name(62_000), ts=NOW_MS + 1)])

        assert len(engine.bursts.open_bursts) == 2

    def test_nearby_strike_merges_with_weighted_center(self, engine: FlowEngine) -> None:
        feed(engine, [make_trade("A", ts=NOW_MS), make_trade("B", instrument=option_name(61_000), ts=NOW_MS + 1)])

        (burst,) = engine.bursts.open_bursts
        assert burst.center_strike == 60_500.0
        assert burst.instruments == {CALL, option_name(61_000)}

    def test_inactivity_window_expires_burst(self, engine: FlowEngine) -> None:
        trades = [make_trade(f"T{i}", ts=NOW_MS + i) for i in range(4)]
        trades.append(make_trade("late", ts=NOW_MS + 3 + 6_001))

        assert feed(engine, trades) == [None] * 5
        (burst,) = engine.bursts.open_bursts
        assert burst.qty_sum == 10.0
        assert engine.bursts.stats.bursts_evicted == 1

    def test_refire_suppressed_within_dedup_window(self, engine: FlowEngine) -> None:
        first = feed(engine, [make_trade(f"A{i}", ts=NOW_MS + i * 1_000) for i in range(5)])
        second = feed(engine, [make_trade(f"B{i}", ts=NOW_MS + 5_000 + i * 1_000) for i in range(5)])

        assert first[4] is not None
        assert second == [None] * 5
        assert engine.bursts.stats.suppressed == 1
        assert engine.bursts.stats.fired == 1

    def test_signal_callback_invoked(self, engine: FlowEngine) -> None:
        received = []
        engine.set_signal_callback(received.append)
        feed(engine, [make_trade(f"T{i}", ts=NOW_MS + i) for i in range(5)])

        assert len(received) == 1
        assert engine.stats.signals_emitted == 1

    def test_clear_drops_open_bursts(self, engine: FlowEngine) -> None:
        feed(engine, [make_trade("A")])
        engine.bursts.clear()

        assert engine.bursts.open_bursts == []

    def test_no_delta_source_skipped(self, engine: FlowEngine) -> None:
        """No reported delta and no reference price: neither ledger nor bursts move."""
        engine.reference.price = 0.0
        outcomes = [engine.process_trade(make_trade(f"T{i}", ts=NOW_MS + i, delta=0.0)) for i in range(5)]

        assert [o.signal for o in outcomes] == [None] * 5
        assert not any(o.applied for o in outcomes)
        assert engine.bursts.open_bursts == []
        assert len(engine.ledger) == 0

    def test_big_unit_computed_once_per_print(self, engine: FlowEngine) -> None:
        with patch.object(engine.threshold, "current_big_unit", wraps=engine.threshold.current_big_unit) as spy:
            signals = feed(engine, [make_trade(f"T{i}", ts=NOW_MS + i) for i in range(5)])

        assert signals[4] is not None
        assert spy.call_count == 5
