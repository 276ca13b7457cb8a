"""Delta resolution with a model-free fallback.

Deribit prints carry no greeks and ticker deltas are only known for
subscribed legs, so most trades need an estimate from strike distance alone.
"""

from __future__ import annotations

import math

DELTA_EPSILON = 1e-9
ATM_DELTA = 0.5
FALLBACK_DISTANCE_SCALE = 0.10  # fraction of the reference price


def fallback_abs_delta(strike: float, reference_price: float) -> float:
    """|delta| estimate that decays with |K - S|; 0.5 at the money, in [0, 0.5].

    Without a reference price there is nothing to measure against and the
    estimate is 0; the ledger and burst detector skip such prints.
    """
    if reference_price <= 0 or strike <= 0:
        return 0.0
    distance = abs(strike - reference_price) / (FALLBACK_DISTANCE_SCALE * reference_price)
    return ATM_DELTA * math.exp(-distance)


def signed_delta(raw_delta: float, strike: float, reference_price: float, is_call: bool) -> float:
    """Call deltas are forced positive and put deltas negative."""
    d = abs(raw_delta)
    if d <= DELTA_EPSILON:
        d = fallback_abs_delta(strike, reference_price)
    d = min(d, 1.0)
    return d if is_call else -d
