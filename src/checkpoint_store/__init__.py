"""Checkpoint store: durable per-thread conversation snapshots."""

from .models import (
    Checkpoint,
    CheckpointConfig,
    CheckpointMetadata,
    CheckpointTuple,
    PendingWrite,
    StorageStats,
    Thread,
)
from .serde import CorruptRecordError, decode_record, encode_record
from .store import CheckpointStore, MissingThreadIdError, atomic_write

__all__ = [
    "Checkpoint",
    "CheckpointConfig",
    "CheckpointMetadata",
    "CheckpointStore",
    "CheckpointTuple",
    "CorruptRecordError",
    "MissingThreadIdError",
    "PendingWrite",
    "StorageStats",
    "Thread",
    "atomic_write",
    "decode_record",
    "encode_record",
]
