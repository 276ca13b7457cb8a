"""Residual position ledger and the signal view projected from it.

The ledger is the only writer of ``ResidualPosition``. Live prints and all
three backfill pipelines go through ``apply_trade`` with the same contract,
so the accumulated state does not depend on which path delivered a trade or
in what order. Accumulation is additive; only ``last_trade_ts`` takes a max.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

from options_flow_tracker.detector.delta import DELTA_EPSILON, signed_delta
from options_flow_tracker.detector.models import (
    DEFAULT_BUCKET_WIDTH,
    ClusterKey,
    FlowBurst,
    ResidualPosition,
    Signal,
)
from options_flow_tracker.ingestor.baselines import BigTradeThreshold
from options_flow_tracker.ingestor.instruments import InstrumentRegistry
from options_flow_tracker.ingestor.quotes import ReferencePrice

logger = logging.getLogger(__name__)

STRONG_QTY_MULTIPLE = 10.0
STRONG_DVOL_MULTIPLE = 4.0


@dataclass(frozen=True)
class LedgerConfig:
    bucket_width: int = DEFAULT_BUCKET_WIDTH
    display_min_size: float = 0.0
    expiry_filter_ms: int = 0  # 0 shows every expiry


class ResidualLedger:
    """Per-cluster residual positions plus the signal rows derived from them."""

    def __init__(
        self,
        registry: InstrumentRegistry,
        threshold: BigTradeThreshold,
        reference: ReferencePrice,
        *,
        config: LedgerConfig | None = None,
    ) -> None:
        self._registry = registry
        self._threshold = threshold
        self._reference = reference
        self._cfg = config or LedgerConfig()
        self._expiry_filter_ms = self._cfg.expiry_filter_ms

        self._positions: dict[ClusterKey, ResidualPosition] = {}
        self._anchors: dict[ClusterKey, int] = {}
        self._signals: dict[ClusterKey, Signal] = {}

    @property
    def bucket_width(self) -> int:
        return self._cfg.bucket_width

    @property
    def positions(self) -> Mapping[ClusterKey, ResidualPosition]:
        return self._positions

    @property
    def anchors(self) -> Mapping[ClusterKey, int]:
        return self._anchors

    @property
    def signals(self) -> Mapping[ClusterKey, Signal]:
        return self._signals

    def __len__(self) -> int:
        return len(self._positions)

    def cluster_key(self, instrument: str) -> ClusterKey | None:
        """Cluster of an instrument, or None without expiry or strike."""
        expiry = self._registry.expiry_of(instrument)
        strike = self._registry.strike_of(instrument)
        if expiry <= 0 or strike <= 0:
            return None
        return ClusterKey.of(expiry, self._registry.is_call(instrument), strike, self._cfg.bucket_width)

    def apply_trade(
        self,
        instrument: str,
        ts: int,
        amount: float,
        sign: int,
        raw_delta: float = 0.0,
        price: float = 0.0,
        *,
        unit: float | None = None,
    ) -> ClusterKey | None:
        """Accumulate one print into its cluster.

        Args:
            instrument: Option instrument name.
            ts: Trade timestamp (epoch ms).
            amount: Trade size; only the magnitude is used.
            sign: +1 for buyer-initiated, -1 for seller-initiated.
            raw_delta: Reported delta; |delta| <= epsilon uses the fallback.
            price: Trade price (informational).
            unit: Big-trade unit already computed for this print.

        Returns:
            The updated cluster, or None when the print was rejected
            (unknown expiry, unparsable strike, no delta source or below the
            big-trade size).
        """
        key = self.cluster_key(instrument)
        if key is None:
            logger.debug("Skipping %s: no expiry or strike", instrument)
            return None

        size = abs(amount)
        if unit is None:
            unit = self._threshold.current_big_unit()
        if size < unit:
            return None
        if abs(raw_delta) <= DELTA_EPSILON and self._reference.price <= 0:
            logger.debug("Skipping %s: no reported delta and no reference price", instrument)
            return None

        step = size if sign > 0 else -size
        strike = self._registry.strike_of(instrument)
        d = signed_delta(raw_delta, strike, self._reference.price, key.is_call)

        pos = self._positions.get(key)
        if pos is None:
            pos = ResidualPosition()
            self._positions[key] = pos
        pos.qty += step
        pos.signed_qty += step
        pos.delta_weighted_volume += step * d
        pos.last_trade_ts = max(pos.last_trade_ts, int(ts))
        pos.trade_count += 1
        pos.participants.add(instrument)

        existing = self._signals.get(key)
        if existing is not None:
            self._signals[key] = self._refresh(existing, pos)
        return key

    def _refresh(self, signal: Signal, pos: ResidualPosition) -> Signal:
        q = abs(pos.qty)
        ref = self._reference.price
        return replace(
            signal,
            residual_qty=pos.qty,
            avg_abs_delta=pos.avg_abs_delta,
            abs_dvol=abs(pos.delta_weighted_volume),
            notional=q * ref if ref > 0 else 0.0,
            trade_count=pos.trade_count,
            unique_instruments=len(pos.participants),
            last_trade_ts=pos.last_trade_ts,
        )

    # Signal view

    def passes_filter(self, expiry_ms: int) -> bool:
        return self._expiry_filter_ms == 0 or self._expiry_filter_ms == expiry_ms

    def set_expiry_filter(self, expiry_ms: int) -> list[Signal]:
        self._expiry_filter_ms = max(0, int(expiry_ms))
        return self.rebuild_signals()

    def upsert_signal(self, key: ClusterKey, snapshot: FlowBurst, *, unit: float | None = None) -> Signal | None:
        """Create or refresh the row for ``key`` from a burst-shaped snapshot.

        The row is removed (and None returned) when the expiry filter rejects
        it or its residual is below the display size.
        """
        if not self.passes_filter(key.expiry_ms):
            self._signals.pop(key, None)
            return None

        pos = self._positions.get(key) or ResidualPosition(
            last_trade_ts=snapshot.last_ts,
            trade_count=snapshot.trade_count,
            participants=set(snapshot.instruments),
        )
        if abs(pos.qty) < max(self._cfg.display_min_size, 1.0):
            self._signals.pop(key, None)
            return None

        anchor = self._anchors.get(key)
        if anchor is None:
            anchor = snapshot.start_ts if snapshot.start_ts > 0 else pos.last_trade_ts
            self._anchors[key] = anchor

        if abs(snapshot.dvol_sum) > DELTA_EPSILON:
            direction = 1 if snapshot.dvol_sum >= 0 else -1
        else:
            cp = 1 if snapshot.is_call else -1
            bs = 1 if snapshot.is_buy else -1
            direction = 1 if cp * bs >= 0 else -1

        if unit is None:
            unit = self._threshold.current_big_unit()
        strong = snapshot.qty_sum >= unit * STRONG_QTY_MULTIPLE or abs(snapshot.dvol_sum) >= unit * STRONG_DVOL_MULTIPLE

        q = abs(pos.qty)
        ref = self._reference.price
        signal = Signal(
            key=key,
            anchor_ts=anchor,
            is_buy=snapshot.is_buy,
            direction=direction,
            strong=strong,
            strike=float(math.floor(snapshot.center_strike + 0.5)),
            residual_qty=pos.qty,
            avg_abs_delta=pos.avg_abs_delta,
            abs_dvol=abs(pos.delta_weighted_volume),
            notional=q * ref if ref > 0 else 0.0,
            trade_count=pos.trade_count,
            unique_instruments=len(pos.participants),
            last_trade_ts=pos.last_trade_ts,
        )
        self._signals[key] = signal
        return signal

    def rebuild_signals(self) -> list[Signal]:
        """Re-project every material cluster into the signal view.

        Positions are only read. Anchors already assigned are kept; clusters
        seen for the first time are anchored at their last trade.
        """
        self._signals.clear()
        unit = self._threshold.current_big_unit()
        rows: list[Signal] = []
        for key, pos in self._positions.items():
            if not self.passes_filter(key.expiry_ms):
                continue
            if abs(pos.qty) < unit:
                continue
            snapshot = FlowBurst(
                start_ts=0,
                last_ts=pos.last_trade_ts,
                is_buy=pos.qty >= 0,
                is_call=key.is_call,
                center_strike=float(key.strike_bucket),
                qty_sum=pos.qty,
                dvol_sum=pos.delta_weighted_volume,
                trade_count=pos.trade_count,
                instruments=set(pos.participants),
            )
            signal = self.upsert_signal(key, snapshot, unit=unit)
            if signal is not None:
                rows.append(signal)
        rows.sort(key=lambda s: s.anchor_ts, reverse=True)
        logger.debug("Signal view rebuilt: %d rows from %d clusters", len(rows), len(self._positions))
        return rows

    # Analytics inputs

    def residual_qty_by_cluster(self) -> dict[ClusterKey, float]:
        return {k: p.qty for k, p in self._positions.items()}

    def residual_dvol_by_cluster(self) -> dict[ClusterKey, float]:
        return {k: p.delta_weighted_volume for k, p in self._positions.items()}

    def participants_by_cluster(self) -> dict[ClusterKey, frozenset[str]]:
        return {k: frozenset(p.participants) for k, p in self._positions.items()}

    # Persistence

    def restore(
        self,
        positions: Mapping[ClusterKey, ResidualPosition],
        anchors: Mapping[ClusterKey, int],
    ) -> None:
        self._positions = {k: p.copy() for k, p in positions.items()}
        self._anchors = dict(anchors)
        self._signals.clear()

    def export(self) -> tuple[dict[ClusterKey, ResidualPosition], dict[ClusterKey, int]]:
        return {k: p.copy() for k, p in self._positions.items()}, dict(self._anchors)

    def known_keys(self) -> Iterable[ClusterKey]:
        return self._positions.keys()
