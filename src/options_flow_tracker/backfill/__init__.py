"""Backfill layer - Historical trade reconciliation pipelines."""

from options_flow_tracker.backfill.orchestrator import (
    BackfillConfig,
    BackfillError,
    BackfillKind,
    BackfillOrchestrator,
    BackfillStats,
)

__all__ = [
    "BackfillConfig",
    "BackfillError",
    "BackfillKind",
    "BackfillOrchestrator",
    "BackfillStats",
]
