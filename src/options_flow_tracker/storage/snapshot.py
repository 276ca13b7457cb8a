"""Snapshot codec and Redis-backed persistence.

The snapshot is one JSON document holding the residual maps, signal anchors,
the trailing amount samples, the last delta/IV per instrument and the trade
ids seen in the last 24h. Reading is
schema-on-read: a missing or corrupt blob means "no prior state", and
individual malformed entries are dropped rather than failing the load.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from options_flow_tracker.clock import DAY_MS, Clock
from options_flow_tracker.detector.models import ClusterKey, ResidualPosition

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
DEFAULT_SNAPSHOT_KEY = "options_flow:snapshot"
DEFAULT_WATERMARK_KEY = "options_flow:cache:last_backfill_to_ms"


class SnapshotError(Exception):
    """Raised when the snapshot store cannot be read or written."""


@dataclass
class Snapshot:
    ts: int
    positions: dict[ClusterKey, ResidualPosition] = field(default_factory=dict)
    anchors: dict[ClusterKey, int] = field(default_factory=dict)
    amount_samples: list[tuple[int, float]] = field(default_factory=list)
    last_iv: dict[str, float] = field(default_factory=dict)
    last_delta: dict[str, float] = field(default_factory=dict)
    trade_ids: list[tuple[int, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary keyed by cluster key strings."""
        return {
            "version": SNAPSHOT_VERSION,
            "ts": self.ts,
            "residual_qty": {k.to_string(): p.qty for k, p in self.positions.items()},
            "residual_dvol": {k.to_string(): p.delta_weighted_volume for k, p in self.positions.items()},
            "residual_signed_qty": {k.to_string(): p.signed_qty for k, p in self.positions.items()},
            "residual_last_ts": {k.to_string(): p.last_trade_ts for k, p in self.positions.items()},
            "residual_trades": {k.to_string(): p.trade_count for k, p in self.positions.items()},
            "residual_insts": {k.to_string(): sorted(p.participants) for k, p in self.positions.items()},
            "signal_anchor_ts": {k.to_string(): ts for k, ts in self.anchors.items()},
            "amt_samples": [[ts, a] for ts, a in self.amount_samples],
            "last_iv": dict(self.last_iv),
            "last_delta": dict(self.last_delta),
            "trade_ids": [[ts, trade_id] for ts, trade_id in self.trade_ids],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Snapshot:
        """Rebuild a snapshot, skipping entries that do not parse."""
        positions: dict[ClusterKey, ResidualPosition] = {}

        def position(text: str) -> ResidualPosition | None:
            try:
                key = ClusterKey.parse(text)
            except (ValueError, OverflowError):
                return None
            pos = positions.get(key)
            if pos is None:
                pos = ResidualPosition()
                positions[key] = pos
            return pos

        for text, value in _mapping(data.get("residual_qty")).items():
            pos = position(text)
            if pos is not None:
                pos.qty = _float(value)
        for text, value in _mapping(data.get("residual_dvol")).items():
            pos = position(text)
            if pos is not None:
                pos.delta_weighted_volume = _float(value)
        for text, value in _mapping(data.get("residual_signed_qty")).items():
            pos = position(text)
            if pos is not None:
                pos.signed_qty = _float(value)
        for text, value in _mapping(data.get("residual_last_ts")).items():
            pos = position(text)
            if pos is not None:
                pos.last_trade_ts = _int(value)
        for text, value in _mapping(data.get("residual_trades")).items():
            pos = position(text)
            if pos is not None:
                pos.trade_count = _int(value)
        for text, value in _mapping(data.get("residual_insts")).items():
            pos = position(text)
            if pos is not None and isinstance(value, list):
                pos.participants = {str(v) for v in value}

        anchors: dict[ClusterKey, int] = {}
        for text, value in _mapping(data.get("signal_anchor_ts")).items():
            try:
                anchors[ClusterKey.parse(text)] = _int(value)
            except (ValueError, OverflowError):
                continue

        samples: list[tuple[int, float]] = []
        raw_samples = data.get("amt_samples")
        if isinstance(raw_samples, list):
            for row in raw_samples:
                if isinstance(row, (list, tuple)) and len(row) >= 2:
                    ts, amount = _int(row[0]), _float(row[1])
                    if ts > 0 and amount > 0:
                        samples.append((ts, amount))

        trade_ids: list[tuple[int, str]] = []
        raw_ids = data.get("trade_ids")
        if isinstance(raw_ids, list):
            for row in raw_ids:
                if isinstance(row, (list, tuple)) and len(row) >= 2 and row[1] is not None:
                    ts = _int(row[0])
                    if ts > 0:
                        trade_ids.append((ts, str(row[1])))

        return cls(
            ts=_int(data.get("ts")),
            positions=positions,
            anchors=anchors,
            amount_samples=samples,
            last_iv={str(k): _float(v) for k, v in _mapping(data.get("last_iv")).items()},
            last_delta={str(k): _float(v) for k, v in _mapping(data.get("last_delta")).items()},
            trade_ids=trade_ids,
        )


def encode_snapshot(snapshot: Snapshot) -> str:
    return json.dumps(snapshot.to_dict(), separators=(",", ":"))


def decode_snapshot(blob: str | bytes | None) -> Snapshot | None:
    """Parse a stored blob; None when missing, corrupt or not an object."""
    if not blob:
        return None
    try:
        data = json.loads(blob)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        logger.warning("Snapshot blob is corrupt; starting without prior state")
        return None
    if not isinstance(data, dict):
        logger.warning("Snapshot blob is not an object; starting without prior state")
        return None
    return Snapshot.from_dict(data)


class SnapshotStore:
    """Snapshot and backfill watermark persisted as Redis strings."""

    def __init__(
        self,
        redis: Redis,
        clock: Clock,
        *,
        key: str = DEFAULT_SNAPSHOT_KEY,
        watermark_key: str = DEFAULT_WATERMARK_KEY,
    ) -> None:
        self._redis = redis
        self._clock = clock
        self._key = key
        self._watermark_key = watermark_key

    async def save(self, snapshot: Snapshot) -> None:
        """Write the snapshot.

        Raises:
            SnapshotError: If Redis rejects the write.
        """
        try:
            await self._redis.set(self._key, encode_snapshot(snapshot))
        except RedisError as e:
            raise SnapshotError(f"Failed to save snapshot: {e}") from e
        logger.debug("Snapshot saved: %d clusters", len(snapshot.positions))

    async def load(self) -> Snapshot | None:
        try:
            blob = await self._redis.get(self._key)
        except RedisError as e:
            logger.warning("Failed to read snapshot: %s", e)
            return None
        return decode_snapshot(blob)

    async def save_watermark(self, to_ms: int) -> None:
        try:
            await self._redis.set(self._watermark_key, str(int(to_ms)))
        except RedisError as e:
            raise SnapshotError(f"Failed to save watermark: {e}") from e

    async def load_watermark(self, default: int | None = None) -> int:
        """Last reconciled backfill end, or ``default`` (24h ago) when unknown."""
        fallback = self._clock.now_ms() - DAY_MS if default is None else default
        try:
            raw = await self._redis.get(self._watermark_key)
        except RedisError as e:
            logger.warning("Failed to read backfill watermark: %s", e)
            return fallback
        if raw is None:
            return fallback
        try:
            value = int(raw.decode() if isinstance(raw, bytes) else raw)
        except ValueError:
            return fallback
        return value if value > 0 else fallback


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, dict) else {}


def _float(value: Any) -> float:
    """Finite float or 0; JSON allows NaN and Infinity."""
    try:
        f = float(value)
    except (TypeError, ValueError):
        return 0.0
    return f if math.isfinite(f) else 0.0


def _int(value: Any) -> int:
    return int(_float(value))
