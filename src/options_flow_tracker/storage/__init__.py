"""Persistence layer - Redis-backed flow snapshots."""

from options_flow_tracker.storage.snapshot import (
    Snapshot,
    SnapshotError,
    SnapshotStore,
    decode_snapshot,
    encode_snapshot,
)

__all__ = [
    "Snapshot",
    "SnapshotError",
    "SnapshotStore",
    "decode_snapshot",
    "encode_snapshot",
]
