"""Option chain registry and live subscription selection."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from options_flow_tracker.ingestor.models import Instrument, is_call_name, parse_strike

logger = logging.getLogger(__name__)

GLOBAL_TRADES_CHANNEL = "trades.option.{currency}.raw"


def trades_channel(instrument: str) -> str:
    return f"trades.{instrument}.raw"


def ticker_channel(instrument: str) -> str:
    return f"ticker.{instrument}.raw"


class InstrumentRegistry:
    """Known option instruments keyed by name.

    Strike and call/put always come from the instrument name so that prints
    for instruments missing from the registry still parse; only the expiry
    requires registry metadata.
    """

    def __init__(self) -> None:
        self._by_name: dict[str, Instrument] = {}

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def load(self, instruments: Iterable[Instrument]) -> int:
        """Replace the registry with the active instruments given.

        Returns:
            Number of instruments registered.
        """
        self._by_name = {i.name: i for i in instruments if i.is_active}
        logger.info("Instrument registry loaded: %d instruments", len(self._by_name))
        return len(self._by_name)

    def add(self, instrument: Instrument) -> None:
        self._by_name[instrument.name] = instrument

    def get(self, name: str) -> Instrument | None:
        return self._by_name.get(name)

    def expiry_of(self, name: str) -> int:
        inst = self._by_name.get(name)
        return inst.expiry_ms if inst else 0

    @staticmethod
    def strike_of(name: str) -> float:
        return parse_strike(name)

    @staticmethod
    def is_call(name: str) -> bool:
        return is_call_name(name)

    def names(self) -> list[str]:
        return sorted(self._by_name)

    def live_names(self, now_ms: int) -> list[str]:
        return sorted(n for n, i in self._by_name.items() if i.expiry_ms > now_ms)

    def expiries(self) -> list[int]:
        return sorted({i.expiry_ms for i in self._by_name.values() if i.expiry_ms > 0})

    def nearest_expiry(self, now_ms: int) -> int:
        live = [e for e in self.expiries() if e > now_ms]
        return live[0] if live else 0

    def select_near_money(
        self,
        *,
        reference_price: float,
        now_ms: int,
        per_side: int = 8,
        moneyness_band: float = 0.0,
    ) -> list[str]:
        """Pick the calls and puts of the nearest expiry closest to the money.

        Args:
            reference_price: Underlying price used to measure distance.
            now_ms: Current time; expired instruments are never selected.
            per_side: How many calls and how many puts to return.
            moneyness_band: When > 0, only strikes with |K/S - 1| <= band qualify.

        Returns:
            Up to ``2 * per_side`` instrument names.
        """
        if per_side <= 0:
            return []
        expiry = self.nearest_expiry(now_ms)
        if expiry <= 0:
            return []

        calls: list[tuple[float, str]] = []
        puts: list[tuple[float, str]] = []
        for inst in self._by_name.values():
            if inst.expiry_ms != expiry or inst.strike <= 0:
                continue
            if reference_price > 0 and moneyness_band > 0:
                if abs(inst.strike / reference_price - 1.0) > moneyness_band:
                    continue
            dist = abs(inst.strike - reference_price) if reference_price > 0 else inst.strike
            (calls if inst.is_call else puts).append((dist, inst.name))

        calls.sort()
        puts.sort()
        return [n for _, n in calls[:per_side]] + [n for _, n in puts[:per_side]]

    def subscription_channels(
        self,
        *,
        currency: str,
        reference_price: float,
        now_ms: int,
        per_side: int = 8,
        moneyness_band: float = 0.0,
    ) -> list[str]:
        """Global option trade feed plus ticker and trade feeds of near-money legs."""
        channels = [GLOBAL_TRADES_CHANNEL.format(currency=currency)]
        for name in self.select_near_money(
            reference_price=reference_price,
            now_ms=now_ms,
            per_side=per_side,
            moneyness_band=moneyness_band,
        ):
            channels.append(ticker_channel(name))
            channels.append(trades_channel(name))
        return channels
