"""Flow detection layer - Residual positioning and burst signals."""

from options_flow_tracker.detector.burst import BurstConfig, BurstDetector
from options_flow_tracker.detector.ledger import LedgerConfig, ResidualLedger
from options_flow_tracker.detector.models import (
    ClusterKey,
    FlowBurst,
    LegDetail,
    ResidualPosition,
    Signal,
)

__all__ = [
    "BurstConfig",
    "BurstDetector",
    "ClusterKey",
    "FlowBurst",
    "LedgerConfig",
    "LegDetail",
    "ResidualLedger",
    "ResidualPosition",
    "Signal",
]
