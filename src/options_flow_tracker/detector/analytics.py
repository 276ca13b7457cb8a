"""Interfaces of the pricing and aggregation collaborators.

The numerical Greeks solver and the pin-map / Greeks-curve aggregations are
external; the engine only assembles their inputs from ledger state.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from options_flow_tracker.clock import MINUTE_MS
from options_flow_tracker.detector.models import ClusterKey
from options_flow_tracker.ingestor.open_interest import OpenInterestStore


@dataclass(frozen=True)
class GreeksResult:
    iv: float
    delta: float = 0.0
    gamma: float = 0.0
    vanna: float = 0.0
    charm: float = 0.0

    @property
    def solved(self) -> bool:
        return self.iv > 0


class GreeksSolver(Protocol):
    """Implied volatility and greeks from an option price.

    Must return ``iv <= 0`` instead of raising when it cannot solve.
    """

    def solve(
        self,
        option_type: str,
        price: float,
        spot: float,
        strike: float,
        minutes_to_expiry: float,
        rate: float,
        div: float,
    ) -> GreeksResult: ...


class PinMapBuilder(Protocol):
    def __call__(
        self,
        residual_qty_by_cluster: Mapping[ClusterKey, float],
        residual_dvol_by_cluster: Mapping[ClusterKey, float],
        reference_price: float,
        open_interest: OpenInterestStore,
        bucket_width: int,
    ) -> Sequence[Any]: ...


class GreeksCurveBuilder(Protocol):
    def __call__(
        self,
        residual_qty_by_cluster: Mapping[ClusterKey, float],
        participants_by_cluster: Mapping[ClusterKey, frozenset[str]],
        reference_price: float,
        now_ms: int,
        iv_lookup: Callable[[str], float],
    ) -> Sequence[Any]: ...


def resolve_trade_iv(
    *,
    solver: GreeksSolver | None,
    is_call: bool,
    price_in_underlying: float,
    reference_price: float,
    strike: float,
    expiry_ms: int,
    ts_ms: int,
    payload_iv: float,
    representative_iv: float,
) -> float:
    """Solved IV, else the IV carried on the print, else the mark IV.

    Deribit option prices are quoted in the underlying, so the solver is
    given the price converted to the reference currency.
    """
    if solver is not None and price_in_underlying > 0 and reference_price > 0 and expiry_ms > ts_ms:
        minutes = (expiry_ms - ts_ms) / MINUTE_MS
        result = solver.solve(
            "call" if is_call else "put",
            price_in_underlying * reference_price,
            reference_price,
            strike,
            minutes,
            0.0,
            0.0,
        )
        if result.iv > 0:
            return result.iv
    if payload_iv > 0:
        return payload_iv
    return max(0.0, representative_iv)
