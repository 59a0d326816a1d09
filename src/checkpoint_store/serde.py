"""
On-disk checkpoint record codec.

Two record shapes exist and both must stay readable:

- legacy: ``{"checkpoint": {...}, "metadata": {...}, "parentCheckpointId": ...}``
  with checkpoint and metadata stored inline as plain JSON objects.
- versioned: ``{"v": 2, "type": "json", "checkpoint": [...], "metadata": [...]}``
  where checkpoint and metadata are encoded byte sequences (a JSON list of
  byte values, or a base64 string when ``"encoding": "base64"``) and ``type``
  names the payload format.

Writers always produce the versioned shape.
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .models import Checkpoint, CheckpointMetadata

RECORD_VERSION = 2
PAYLOAD_TYPE_JSON = "json"


class CorruptRecordError(ValueError):
    """A stored record could not be decoded."""


@dataclass
class DecodedRecord:
    checkpoint: Checkpoint
    metadata: CheckpointMetadata
    parent_checkpoint_id: str | None
    written_at: int
    legacy: bool


def dumps_typed(obj: Any) -> tuple[str, bytes]:
    """Encode a model or plain value as (type tag, bytes)."""
    if hasattr(obj, "model_dump"):
        obj = obj.model_dump(mode="json")
    return PAYLOAD_TYPE_JSON, json.dumps(obj, separators=(",", ":"), default=str).encode("utf-8")


def loads_typed(type_tag: str, data: bytes) -> Any:
    if type_tag != PAYLOAD_TYPE_JSON:
        raise CorruptRecordError(f"Unsupported payload type: {type_tag!r}")
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptRecordError(f"Invalid payload: {exc}") from exc


def encode_record(
    checkpoint: Checkpoint,
    metadata: CheckpointMetadata,
    parent_checkpoint_id: str | None = None,
) -> str:
    """Serialize a checkpoint record in the versioned shape."""
    type_tag, checkpoint_bytes = dumps_typed(checkpoint)
    _, metadata_bytes = dumps_typed(metadata)
    record: dict[str, Any] = {
        "v": RECORD_VERSION,
        "type": type_tag,
        "checkpoint": list(checkpoint_bytes),
        "metadata": list(metadata_bytes),
        "writtenAt": time.time_ns(),
    }
    if parent_checkpoint_id:
        record["parentCheckpointId"] = parent_checkpoint_id
    return json.dumps(record)


def _as_bytes(value: Any, encoding: str | None) -> bytes:
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as exc:
            raise CorruptRecordError(f"Invalid byte sequence: {exc}") from exc
    if isinstance(value, str) and encoding == "base64":
        try:
            return base64.b64decode(value, validate=True)
        except ValueError as exc:
            raise CorruptRecordError(f"Invalid base64 payload: {exc}") from exc
    raise CorruptRecordError("Expected an encoded byte sequence")


def _is_encoded(value: Any, encoding: str | None) -> bool:
    return isinstance(value, list) or (isinstance(value, str) and encoding == "base64")


def _parent_id(data: dict[str, Any]) -> str | None:
    parent = data.get("parentCheckpointId")
    if parent:
        return str(parent)
    # Older records stored the whole parent config.
    parent_config = data.get("parentConfig")
    if isinstance(parent_config, dict):
        configurable = parent_config.get("configurable") or {}
        if configurable.get("checkpoint_id"):
            return str(configurable["checkpoint_id"])
    return None


def decode_record(content: str | bytes) -> DecodedRecord:
    """Parse a stored record of either shape. Raises CorruptRecordError."""
    try:
        data = json.loads(content)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptRecordError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict) or "checkpoint" not in data:
        raise CorruptRecordError("Record has no checkpoint")

    raw_checkpoint = data.get("checkpoint")
    raw_metadata = data.get("metadata")
    encoding = data.get("encoding")

    if _is_encoded(raw_checkpoint, encoding):
        type_tag = data.get("type") or PAYLOAD_TYPE_JSON
        checkpoint_value = loads_typed(type_tag, _as_bytes(raw_checkpoint, encoding))
        metadata_value = (
            loads_typed(type_tag, _as_bytes(raw_metadata, encoding))
            if raw_metadata is not None
            else {}
        )
        legacy = False
    elif isinstance(raw_checkpoint, dict):
        checkpoint_value = raw_checkpoint
        metadata_value = raw_metadata if isinstance(raw_metadata, dict) else {}
        legacy = True
    else:
        raise CorruptRecordError("Unrecognized checkpoint shape")

    try:
        checkpoint = Checkpoint.model_validate(checkpoint_value)
        metadata = CheckpointMetadata.model_validate(metadata_value or {})
    except ValidationError as exc:
        raise CorruptRecordError(f"Invalid checkpoint content: {exc}") from exc

    written_at = data.get("writtenAt")
    return DecodedRecord(
        checkpoint=checkpoint,
        metadata=metadata,
        parent_checkpoint_id=_parent_id(data),
        written_at=written_at if isinstance(written_at, int) else 0,
        legacy=legacy,
    )


__all__ = [
    "CorruptRecordError",
    "DecodedRecord",
    "decode_record",
    "dumps_typed",
    "encode_record",
    "loads_typed",
]
