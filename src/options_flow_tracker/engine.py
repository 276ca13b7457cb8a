"""Flow engine: the single-writer context for all flow state.

Every print, whether it arrives on the live stream or from a backfill
pipeline, goes through ``FlowEngine.process_trade``:

1. trade-id dedup (one store shared by every source)
2. amount sample for the adaptive threshold
3. residual ledger update (big trades only)
4. leg detail with aggressor inference, and expiry activity
5. burst detection, which may emit a signal

All mutation happens on the event loop thread, so no locking is needed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from options_flow_tracker.clock import DAY_MS, Clock
from options_flow_tracker.detector.activity import ExpiryActivity, LegBook
from options_flow_tracker.detector.analytics import (
    GreeksCurveBuilder,
    GreeksSolver,
    PinMapBuilder,
    resolve_trade_iv,
)
from options_flow_tracker.detector.burst import BurstConfig, BurstDetector
from options_flow_tracker.detector.delta import signed_delta
from options_flow_tracker.detector.ledger import LedgerConfig, ResidualLedger
from options_flow_tracker.detector.models import DEFAULT_BUCKET_WIDTH, ClusterKey, LegDetail, Signal
from options_flow_tracker.ingestor.baselines import AmtSample, BigTradeThreshold, BigTradeThresholdConfig
from options_flow_tracker.ingestor.dedup import TradeDeduplicator
from options_flow_tracker.ingestor.instruments import InstrumentRegistry
from options_flow_tracker.ingestor.models import TickerUpdate, TradeEvent
from options_flow_tracker.ingestor.open_interest import OpenInterestStore
from options_flow_tracker.ingestor.quotes import GreeksCache, NbboStore, ReferencePrice
from options_flow_tracker.storage.snapshot import Snapshot

logger = logging.getLogger(__name__)


class TradeSource(str, Enum):
    LIVE = "live"
    DELTA = "delta"
    FULL = "full"
    MANUAL = "manual"


@dataclass(frozen=True)
class EngineConfig:
    bucket_width: int = DEFAULT_BUCKET_WIDTH
    manual_big_unit: float = 0.0
    display_min_size: float = 0.0
    expiry_filter_ms: int = 0
    dedup_window_ms: int = DAY_MS
    max_snapshot_samples: int = 1000


@dataclass
class EngineStats:
    trades_seen: int = 0
    duplicates: int = 0
    big_trades: int = 0
    applied: int = 0
    signals_emitted: int = 0


@dataclass(frozen=True)
class TradeOutcome:
    duplicate: bool = False
    key: ClusterKey | None = None
    signal: Signal | None = None

    @property
    def applied(self) -> bool:
        return self.key is not None


SignalCallback = Callable[[Signal], None]


class FlowEngine:
    """Owns the registry, market data stores, ledger, detector and dedup."""

    def __init__(
        self,
        clock: Clock,
        *,
        config: EngineConfig | None = None,
        burst_config: BurstConfig | None = None,
        solver: GreeksSolver | None = None,
        on_signal: SignalCallback | None = None,
    ) -> None:
        self._clock = clock
        self._cfg = config or EngineConfig()
        self._solver = solver
        self._on_signal = on_signal
        self._stats = EngineStats()

        self.registry = InstrumentRegistry()
        self.reference = ReferencePrice()
        self.nbbo = NbboStore()
        self.greeks = GreeksCache()
        self.open_interest = OpenInterestStore()
        self.dedup = TradeDeduplicator(window_ms=self._cfg.dedup_window_ms)
        self.threshold = BigTradeThreshold(
            clock, config=BigTradeThresholdConfig(manual_big_unit=self._cfg.manual_big_unit)
        )
        self.ledger = ResidualLedger(
            self.registry,
            self.threshold,
            self.reference,
            config=LedgerConfig(
                bucket_width=self._cfg.bucket_width,
                display_min_size=self._cfg.display_min_size,
                expiry_filter_ms=self._cfg.expiry_filter_ms,
            ),
        )
        self.bursts = BurstDetector(self.registry, self.threshold, self.reference, self.ledger, config=burst_config)
        self.legs = LegBook()
        self.activity = ExpiryActivity(clock)

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def stats(self) -> EngineStats:
        return self._stats

    def set_signal_callback(self, callback: SignalCallback | None) -> None:
        self._on_signal = callback

    def parse_trade(self, data: dict[str, Any]) -> TradeEvent | None:
        """Build a TradeEvent from a venue trade object using the last known delta."""
        try:
            name = str(data["instrument_name"])
            return TradeEvent.from_deribit(data, delta=self.greeks.delta(name))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("Skipping malformed trade: %s", e)
            return None

    def apply_ticker(self, ticker: TickerUpdate) -> None:
        self.greeks.apply_ticker(ticker)
        if ticker.best_bid > 0 and ticker.best_ask > 0:
            self.nbbo.update(ticker.instrument, ticker.best_bid, ticker.best_ask)

    def process_trade(
        self,
        trade: TradeEvent,
        *,
        source: TradeSource = TradeSource.LIVE,
        feed_bursts: bool = True,
        min_size: float = 0.0,
    ) -> TradeOutcome:
        """Run one print through dedup, threshold, ledger and detector.

        Args:
            trade: The print.
            source: Which path delivered it (logging only; the contract is identical).
            feed_bursts: Whether the print may open or grow bursts.
            min_size: Extra pre-filter applied before the ledger's own gate.
        """
        self._stats.trades_seen += 1
        if self.dedup.is_duplicate(trade.trade_id, trade.timestamp_ms):
            self._stats.duplicates += 1
            return TradeOutcome(duplicate=True)

        self.threshold.record(trade.timestamp_ms, trade.amount)
        unit = self.threshold.current_big_unit()
        if trade.amount < min_size or abs(trade.amount) < unit:
            return TradeOutcome()
        self._stats.big_trades += 1

        key = self.ledger.apply_trade(
            trade.instrument,
            trade.timestamp_ms,
            trade.amount,
            trade.sign,
            trade.delta,
            trade.price,
            unit=unit,
        )
        if key is not None:
            self._stats.applied += 1
            self._record_leg(key, trade)
            self.activity.record(key.expiry_ms, trade.timestamp_ms, trade.amount)
            logger.debug(
                "Applied %s trade %s %s %.1f @ %s -> %s",
                source.value,
                trade.trade_id,
                trade.side.value,
                trade.amount,
                trade.price,
                key.to_string(),
            )

        signal = self.bursts.on_trade(trade, unit=unit) if feed_bursts else None
        if signal is not None:
            self._stats.signals_emitted += 1
            if self._on_signal:
                self._on_signal(signal)
        return TradeOutcome(key=key, signal=signal)

    def _record_leg(self, key: ClusterKey, trade: TradeEvent) -> None:
        strike = self.registry.strike_of(trade.instrument)
        nbbo = self.nbbo.get(trade.instrument)
        result = self.nbbo.classify(trade.instrument, trade.price)
        trade_iv = resolve_trade_iv(
            solver=self._solver,
            is_call=key.is_call,
            price_in_underlying=trade.price,
            reference_price=self.reference.price,
            strike=strike,
            expiry_ms=key.expiry_ms,
            ts_ms=trade.timestamp_ms,
            payload_iv=trade.iv,
            representative_iv=self.greeks.iv(trade.instrument),
        )
        self.legs.add(
            LegDetail(
                ts=trade.timestamp_ms,
                key=key,
                instrument=trade.instrument,
                sign=trade.sign,
                amount=trade.amount,
                est_delta=signed_delta(trade.delta, strike, self.reference.price, key.is_call),
                price=trade.price,
                aggressor=result.aggressor.value,
                expiry_ms=key.expiry_ms,
                strike=strike,
                is_call=key.is_call,
                nbbo_bid=nbbo.bid if nbbo else 0.0,
                nbbo_ask=nbbo.ask if nbbo else 0.0,
                mid=nbbo.mid if nbbo else 0.0,
                bp_from_mid=result.bp_from_mid,
                trade_iv=trade_iv,
                trade_id=trade.trade_id,
            )
        )

    def rebuild_signals(self) -> list[Signal]:
        return self.ledger.rebuild_signals()

    # Analytics collaborators

    def build_pin_map(self, builder: PinMapBuilder) -> Any:
        return builder(
            self.ledger.residual_qty_by_cluster(),
            self.ledger.residual_dvol_by_cluster(),
            self.reference.price,
            self.open_interest,
            self.ledger.bucket_width,
        )

    def build_greeks_curve(self, builder: GreeksCurveBuilder) -> Any:
        return builder(
            self.ledger.residual_qty_by_cluster(),
            self.ledger.participants_by_cluster(),
            self.reference.price,
            self._clock.now_ms(),
            self.greeks.iv,
        )

    # Snapshot

    def export_snapshot(self) -> Snapshot:
        positions, anchors = self.ledger.export()
        samples = self.threshold.samples()
        keep = self._cfg.max_snapshot_samples
        samples = samples[-keep:] if keep > 0 else []
        return Snapshot(
            ts=self._clock.now_ms(),
            positions=positions,
            anchors=anchors,
            amount_samples=[(s.ts, s.abs_amount) for s in samples],
            last_iv=dict(self.greeks.last_iv),
            last_delta=dict(self.greeks.last_delta),
            trade_ids=self.dedup.entries(self._clock.now_ms() - self.dedup.window_ms),
        )

    def restore_snapshot(self, snapshot: Snapshot) -> None:
        self.ledger.restore(snapshot.positions, snapshot.anchors)
        self.threshold.restore([AmtSample(ts=ts, abs_amount=a) for ts, a in snapshot.amount_samples])
        self.greeks.last_iv.update(snapshot.last_iv)
        self.greeks.last_delta.update(snapshot.last_delta)
        self.dedup.restore(snapshot.trade_ids)
        logger.info(
            "Snapshot restored: %d clusters, %d anchors, %d samples, %d trade ids (ts=%d)",
            len(snapshot.positions),
            len(snapshot.anchors),
            len(snapshot.amount_samples),
            len(snapshot.trade_ids),
            snapshot.ts,
        )
