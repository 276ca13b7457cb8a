"""Tests for the flow engine."""

import pytest
from conftest import EXPIRY_MS, NOW_MS, ManualClock, option_name, trade_row

from options_flow_tracker.clock import DAY_MS
from options_flow_tracker.detector.analytics import GreeksResult
from options_flow_tracker.detector.models import ClusterKey
from options_flow_tracker.engine import EngineConfig, FlowEngine, TradeSource
from options_flow_tracker.ingestor.models import BookSummary, Instrument, TickerUpdate
from options_flow_tracker.storage.snapshot import decode_snapshot, encode_snapshot

CALL = option_name(60_000)
KEY = ClusterKey(EXPIRY_MS, True, 60_000)


class TestProcessTrade:
    """Tests for FlowEngine.process_trade."""

    def test_live_then_backfill_applied_once(self, engine: FlowEngine) -> None:
        """The same trade id from two sources affects state once."""
        live = engine.parse_trade(trade_row("T1", CALL, amount=100.0))
        history = engine.parse_trade(trade_row("T1", CALL, amount=100.0))

        first = engine.process_trade(live, source=TradeSource.LIVE)
        second = engine.process_trade(history, source=TradeSource.DELTA, feed_bursts=False)

        assert first.applied is True
        assert second.duplicate is True
        assert engine.ledger.positions[KEY].qty == 100.0
        assert engine.stats.duplicates == 1
        assert engine.threshold.sample_count == 1

    def test_small_trade_sampled_but_not_applied(self, engine: FlowEngine) -> None:
        outcome = engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=5.0)))

        assert outcome.applied is False
        assert outcome.duplicate is False
        assert engine.threshold.sample_count == 1
        assert len(engine.ledger) == 0
        assert engine.bursts.open_bursts == []

    def test_min_size_prefilter(self, engine: FlowEngine) -> None:
        outcome = engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=10.0)), min_size=20.0)
        assert outcome.applied is False

    def test_feed_bursts_disabled(self, engine: FlowEngine) -> None:
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=10.0)), feed_bursts=False)
        assert engine.bursts.open_bursts == []

    def test_parse_trade_uses_last_delta(self, engine: FlowEngine) -> None:
        engine.apply_ticker(TickerUpdate(instrument=CALL, delta=0.31))
        trade = engine.parse_trade(trade_row("T1", CALL))

        assert trade.delta == 0.31

    def test_parse_trade_malformed(self, engine: FlowEngine) -> None:
        assert engine.parse_trade({"instrument_name": CALL}) is None
        assert engine.parse_trade({"trade_id": "x"}) is None

    def test_leg_recorded_with_aggressor(self, engine: FlowEngine) -> None:
        engine.apply_ticker(TickerUpdate(instrument=CALL, best_bid=0.040, best_ask=0.050, mark_iv=47.0))
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=20.0, price=0.051)))

        (leg,) = engine.legs.legs(KEY)
        assert leg.aggressor == "lift_ask"
        assert leg.trade_iv == 47.0
        assert leg.nbbo_bid == 0.040
        assert leg.est_delta == pytest.approx(0.5)
        assert engine.activity.rows()[0].qty_1h == 20.0

    def test_solver_iv_on_leg(self, clock: ManualClock, instruments: list[Instrument]) -> None:
        class Solver:
            def solve(self, *args) -> GreeksResult:
                return GreeksResult(iv=61.0)

        engine = FlowEngine(clock, config=EngineConfig(manual_big_unit=10.0), solver=Solver())
        engine.registry.load(instruments)
        engine.reference.update(60_000.0, NOW_MS)
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=20.0)))

        assert engine.legs.legs(KEY)[0].trade_iv == 61.0

    def test_dedup_window_is_one_day(self, engine: FlowEngine) -> None:
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, ts=NOW_MS)))
        again = engine.process_trade(engine.parse_trade(trade_row("T1", CALL, ts=NOW_MS + DAY_MS + 1)))

        assert again.duplicate is False


class TestAnalyticsInputs:
    def test_pin_map_inputs(self, engine: FlowEngine) -> None:
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=20.0)))
        captured = {}

        def builder(qty, dvol, ref, oi, width):
            captured.update(qty=qty, dvol=dvol, ref=ref, oi=oi, width=width)
            return []

        engine.build_pin_map(builder)

        assert captured["qty"] == {KEY: 20.0}
        assert captured["ref"] == 60_000.0
        assert captured["oi"] is engine.open_interest
        assert captured["width"] == 1_000

    def test_greeks_curve_inputs(self, engine: FlowEngine) -> None:
        engine.apply_ticker(TickerUpdate(instrument=CALL, mark_iv=52.0))
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=20.0)))
        captured = {}

        def builder(qty, participants, ref, now, iv_lookup):
            captured.update(participants=participants, now=now, iv=iv_lookup(CALL))
            return []

        engine.build_greeks_curve(builder)

        assert captured["participants"] == {KEY: frozenset({CALL})}
        assert captured["now"] == NOW_MS
        assert captured["iv"] == 52.0

    def test_open_interest_ratio(self, engine: FlowEngine) -> None:
        engine.open_interest.apply_book_summary(
            [BookSummary(instrument=CALL, open_interest=200.0), BookSummary(instrument="BTC-NOPE-1-C", open_interest=1.0)],
            engine.registry,
        )

        assert len(engine.open_interest) == 1
        assert engine.open_interest.compute_ratio(EXPIRY_MS, True, {60_000.0: -50.0}) == pytest.approx(0.25)


class TestSnapshot:
    def test_export_and_restore(self, engine: FlowEngine, clock: ManualClock, instruments: list[Instrument]) -> None:
        engine.apply_ticker(TickerUpdate(instrument=CALL, delta=0.4, mark_iv=50.0))
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=20.0)))
        engine.ledger.rebuild_signals()

        snapshot = engine.export_snapshot()
        restored = FlowEngine(clock, config=EngineConfig(manual_big_unit=10.0))
        restored.registry.load(instruments)
        restored.restore_snapshot(snapshot)

        assert snapshot.ts == NOW_MS
        assert restored.ledger.positions[KEY].qty == 20.0
        assert restored.ledger.anchors == engine.ledger.anchors
        assert restored.threshold.sample_count == 1
        assert restored.greeks.delta(CALL) == 0.4
        assert restored.rebuild_signals()[0].key == KEY

    @pytest.mark.parametrize("via_blob", [False, True])
    def test_restored_trade_ids_block_redelivery(
        self, engine: FlowEngine, clock: ManualClock, instruments: list[Instrument], via_blob: bool
    ) -> None:
        """A print seen before a restart is still a duplicate after restoring."""
        engine.process_trade(engine.parse_trade(trade_row("T1", CALL, amount=100.0)))
        snapshot = engine.export_snapshot()
        if via_blob:
            snapshot = decode_snapshot(encode_snapshot(snapshot))

        restored = FlowEngine(clock, config=EngineConfig(manual_big_unit=10.0))
        restored.registry.load(instruments)
        restored.reference.update(60_000.0, NOW_MS)
        restored.restore_snapshot(snapshot)
        outcome = restored.process_trade(
            restored.parse_trade(trade_row("T1", CALL, amount=100.0)), source=TradeSource.MANUAL
        )

        assert snapshot.trade_ids == [(NOW_MS, "T1")]
        assert outcome.duplicate is True
        assert restored.ledger.positions[KEY].qty == 100.0

    def test_snapshot_sample_cap(self, clock: ManualClock) -> None:
        engine = FlowEngine(clock, config=EngineConfig(max_snapshot_samples=3))
        for i in range(10):
            engine.threshold.record(NOW_MS + i, float(i + 1))

        samples = engine.export_snapshot().amount_samples
        assert samples == [(NOW_MS + 7, 8.0), (NOW_MS + 8, 9.0), (NOW_MS + 9, 10.0)]
