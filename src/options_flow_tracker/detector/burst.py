"""Burst detection: clusters near-simultaneous big trades into signals.

A burst collects same-side (buy/sell), same-type (call/put) big trades whose
strikes sit near the burst's running center and that arrive within the
inactivity window of each other. A burst fires once its quantity or
delta-weighted volume is large relative to the current big-trade unit;
fired bursts are deduplicated per cluster and 30s bucket for 90s.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from options_flow_tracker.detector.delta import DELTA_EPSILON, signed_delta
from options_flow_tracker.detector.ledger import ResidualLedger
from options_flow_tracker.detector.models import ClusterKey, FlowBurst, Signal
from options_flow_tracker.ingestor.baselines import BigTradeThreshold
from options_flow_tracker.ingestor.dedup import TradeDeduplicator
from options_flow_tracker.ingestor.instruments import InstrumentRegistry
from options_flow_tracker.ingestor.models import TradeEvent
from options_flow_tracker.ingestor.quotes import ReferencePrice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BurstConfig:
    window_ms: int = 6_000
    strike_width: float = 1_500.0
    fire_qty_multiple: float = 5.0
    fire_dvol_multiple: float = 2.0
    signal_dedup_ms: int = 90_000
    signal_bucket_ms: int = 30_000


@dataclass
class BurstStats:
    bursts_opened: int = 0
    bursts_evicted: int = 0
    fired: int = 0
    suppressed: int = 0


class BurstDetector:
    """Open bursts plus the recently-fired signal keys."""

    def __init__(
        self,
        registry: InstrumentRegistry,
        threshold: BigTradeThreshold,
        reference: ReferencePrice,
        ledger: ResidualLedger,
        *,
        config: BurstConfig | None = None,
    ) -> None:
        self._registry = registry
        self._threshold = threshold
        self._reference = reference
        self._ledger = ledger
        self._cfg = config or BurstConfig()
        self._bursts: list[FlowBurst] = []
        self._fired_keys = TradeDeduplicator(window_ms=self._cfg.signal_dedup_ms)
        self._stats = BurstStats()

    @property
    def open_bursts(self) -> list[FlowBurst]:
        return list(self._bursts)

    @property
    def stats(self) -> BurstStats:
        return self._stats

    def clear(self) -> None:
        """Drop every open burst (fired-key history is kept)."""
        self._bursts.clear()

    def on_trade(self, trade: TradeEvent, *, unit: float | None = None) -> Signal | None:
        """Feed one print; returns the signal emitted by it, if any."""
        strike = self._registry.strike_of(trade.instrument)
        if strike <= 0:
            return None
        if unit is None:
            unit = self._threshold.current_big_unit()
        if trade.amount < unit:
            return None
        if abs(trade.delta) <= DELTA_EPSILON and self._reference.price <= 0:
            return None

        is_call = self._registry.is_call(trade.instrument)
        size = abs(trade.amount)
        dvol = trade.sign * size * signed_delta(trade.delta, strike, self._reference.price, is_call)
        ts = trade.timestamp_ms

        before = len(self._bursts)
        self._bursts = [b for b in self._bursts if ts - b.last_ts <= self._cfg.window_ms]
        self._stats.bursts_evicted += before - len(self._bursts)

        burst = self._nearest(trade.is_buy, is_call, strike, ts)
        if burst is None:
            burst = FlowBurst(
                start_ts=ts,
                last_ts=ts,
                is_buy=trade.is_buy,
                is_call=is_call,
                center_strike=strike,
                qty_sum=size,
                dvol_sum=dvol,
                trade_count=1,
                instruments={trade.instrument},
                first_instrument=trade.instrument,
            )
            self._bursts.append(burst)
            self._stats.bursts_opened += 1
        else:
            w = max(1, burst.trade_count)
            burst.last_ts = ts
            burst.center_strike = (burst.center_strike * w + strike) / (w + 1)
            burst.qty_sum += size
            burst.dvol_sum += dvol
            burst.trade_count += 1
            burst.instruments.add(trade.instrument)

        if burst.qty_sum < unit:
            return None
        fires = (
            burst.qty_sum >= unit * self._cfg.fire_qty_multiple
            or abs(burst.dvol_sum) >= unit * self._cfg.fire_dvol_multiple
        )
        if not fires:
            return None

        self._bursts.remove(burst)
        return self._fire(burst, unit)

    def _nearest(self, is_buy: bool, is_call: bool, strike: float, ts: int) -> FlowBurst | None:
        best: FlowBurst | None = None
        best_dist = float("inf")
        for b in self._bursts:
            if b.is_buy != is_buy or b.is_call != is_call:
                continue
            dist = abs(strike - b.center_strike)
            if dist > self._cfg.strike_width or ts - b.last_ts > self._cfg.window_ms:
                continue
            if dist < best_dist:
                best, best_dist = b, dist
        return best

    def _fire(self, burst: FlowBurst, unit: float) -> Signal | None:
        expiry = self._registry.expiry_of(burst.first_instrument)
        if expiry <= 0:
            logger.debug("Burst on %s has no expiry; dropped", burst.first_instrument)
            return None

        key = ClusterKey.of(expiry, burst.is_call, burst.center_strike, self._ledger.bucket_width)
        bucket = burst.last_ts // self._cfg.signal_bucket_ms
        if self._fired_keys.is_duplicate(f"{key.to_string()}|{bucket}", burst.last_ts):
            self._stats.suppressed += 1
            return None

        self._stats.fired += 1
        signal = self._ledger.upsert_signal(key, burst, unit=unit)
        if signal is not None:
            logger.info(
                "Signal fired: %s %s strike=%.0f qty=%.1f dvol=%.2f strong=%s",
                key.to_string(),
                signal.pattern,
                signal.strike,
                signal.residual_qty,
                burst.dvol_sum,
                signal.strong,
            )
        return signal
