"""Data ingestion layer - Deribit option trades, quotes and reference data."""

from options_flow_tracker.ingestor.baselines import BigTradeThreshold, BigTradeThresholdConfig
from options_flow_tracker.ingestor.dedup import TradeDeduplicator
from options_flow_tracker.ingestor.deribit_client import (
    DeribitClient,
    DeribitClientError,
    DeribitParseError,
    DeribitTransientError,
    RetryError,
)
from options_flow_tracker.ingestor.instruments import InstrumentRegistry
from options_flow_tracker.ingestor.models import (
    BookSummary,
    Instrument,
    Side,
    TickerUpdate,
    TradeEvent,
)
from options_flow_tracker.ingestor.quotes import Aggressor, NbboStore, classify_aggressor

__all__ = [
    "Aggressor",
    "BigTradeThreshold",
    "BigTradeThresholdConfig",
    "BookSummary",
    "DeribitClient",
    "DeribitClientError",
    "DeribitParseError",
    "DeribitTransientError",
    "Instrument",
    "InstrumentRegistry",
    "NbboStore",
    "RetryError",
    "Side",
    "TickerUpdate",
    "TradeDeduplicator",
    "TradeEvent",
    "classify_aggressor",
]
