"""Data models for threads, checkpoints and pending writes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_now() -> str:
    return utc_now().isoformat()


def normalize_timestamp(value: Any) -> float:
    """
    Epoch seconds for a checkpoint timestamp.

    Accepts ISO-8601 strings, datetimes, epoch seconds and epoch milliseconds
    (numbers above 1e11 are treated as milliseconds). Missing or unparsable
    values sort as 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        number = float(value)
        return number / 1000.0 if abs(number) > 1e11 else number
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return normalize_timestamp(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return normalize_timestamp(datetime.fromisoformat(text))
        except ValueError:
            return 0.0
    return 0.0


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


class Thread(BaseModel):
    """Index entry for one persistent conversation."""

    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId")
    title: str
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")
    message_count: int = Field(default=0, alias="messageCount")

    @field_validator("created_at", "updated_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class StorageStats(BaseModel):
    total_threads: int = 0
    total_checkpoints: int = 0
    oldest_thread_updated_at: datetime | None = None
    newest_thread_updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


class CheckpointMetadata(BaseModel):
    """Why a checkpoint was written: step source, counter and parent steps."""

    model_config = ConfigDict(extra="allow")

    source: str = "loop"  # "input" | "loop" | "update"
    step: int = 0
    parents: dict[str, str] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """Snapshot of a thread's channel values at one step."""

    model_config = ConfigDict(extra="allow")

    v: int = 1
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    ts: str | float | int = Field(default_factory=_iso_now)
    channel_values: dict[str, Any] = Field(default_factory=dict)
    channel_versions: dict[str, Any] = Field(default_factory=dict)

    @property
    def messages(self) -> list[Any]:
        msgs = self.channel_values.get("messages")
        return msgs if isinstance(msgs, list) else []

    @property
    def timestamp(self) -> float:
        return normalize_timestamp(self.ts)


class CheckpointConfig(BaseModel):
    """Addresses a thread, optionally pinned to one checkpoint."""

    thread_id: str | None = None
    checkpoint_id: str | None = None


class CheckpointTuple(BaseModel):
    config: CheckpointConfig
    checkpoint: Checkpoint
    metadata: CheckpointMetadata = Field(default_factory=CheckpointMetadata)
    parent_config: CheckpointConfig | None = None
    written_at: int = 0

    @property
    def sort_key(self) -> tuple[float, int]:
        return (self.checkpoint.timestamp, self.written_at)


class PendingWrite(BaseModel):
    """One staged (channel, value) pair produced by an in-flight task."""

    channel: str
    value: Any = None


__all__ = [
    "Checkpoint",
    "CheckpointConfig",
    "CheckpointMetadata",
    "CheckpointTuple",
    "PendingWrite",
    "StorageStats",
    "Thread",
    "normalize_timestamp",
    "utc_now",
]
