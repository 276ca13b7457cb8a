"""Per-cluster leg history and per-expiry big-trade activity."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass

from options_flow_tracker.clock import DAY_MS, HOUR_MS, Clock
from options_flow_tracker.detector.models import ClusterKey, LegDetail

DEFAULT_LEGS_PER_CLUSTER = 200
DEFAULT_ACTIVITY_RETENTION_MS = 365 * DAY_MS


class LegBook:
    """Most recent big trades per cluster, newest last."""

    def __init__(self, *, max_per_cluster: int = DEFAULT_LEGS_PER_CLUSTER) -> None:
        self._max = max_per_cluster
        self._legs: dict[ClusterKey, deque[LegDetail]] = {}

    def add(self, leg: LegDetail) -> None:
        legs = self._legs.get(leg.key)
        if legs is None:
            legs = deque(maxlen=self._max)
            self._legs[leg.key] = legs
        legs.append(leg)

    def legs(self, key: ClusterKey) -> list[LegDetail]:
        return list(self._legs.get(key, ()))

    def __len__(self) -> int:
        return sum(len(v) for v in self._legs.values())


@dataclass(frozen=True)
class ExpiryActivityRow:
    expiry_ms: int
    qty_all: float
    qty_24h: float
    qty_1h: float


class ExpiryActivity:
    """Big-trade quantity per expiry over all retained time, 24h and 1h."""

    def __init__(self, clock: Clock, *, retention_ms: int = DEFAULT_ACTIVITY_RETENTION_MS) -> None:
        self._clock = clock
        self._retention_ms = retention_ms
        self._events: dict[int, deque[tuple[int, float]]] = defaultdict(deque)

    def record(self, expiry_ms: int, ts_ms: int, qty: float) -> None:
        if expiry_ms <= 0 or qty <= 0:
            return
        self._events[expiry_ms].append((ts_ms, qty))

    def prune(self) -> None:
        cutoff = self._clock.now_ms() - self._retention_ms
        for expiry in list(self._events):
            events = self._events[expiry]
            while events and events[0][0] < cutoff:
                events.popleft()
            if not events:
                del self._events[expiry]

    def rows(self) -> list[ExpiryActivityRow]:
        self.prune()
        now = self._clock.now_ms()
        rows = []
        for expiry in sorted(self._events):
            total = day = hour = 0.0
            for ts, qty in self._events[expiry]:
                total += qty
                if ts >= now - DAY_MS:
                    day += qty
                if ts >= now - HOUR_MS:
                    hour += qty
            rows.append(ExpiryActivityRow(expiry_ms=expiry, qty_all=total, qty_24h=day, qty_1h=hour))
        return rows
