"""Durable, thread-scoped checkpoint storage on the local filesystem."""

from __future__ import annotations

import json
import logging
import os
import random
import shutil
import string
import threading
import time
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from src.resilience.errors import AgentError, ErrorKind, log_error

from .models import (
    Checkpoint,
    CheckpointConfig,
    CheckpointMetadata,
    CheckpointTuple,
    PendingWrite,
    StorageStats,
    Thread,
    utc_now,
)
from .serde import CorruptRecordError, decode_record, encode_record

logger = logging.getLogger(__name__)

FILE_EXTENSION = ".json"
TEMP_SUFFIX = ".tmp"
WRITES_SUFFIX = "-writes.json"
INDEX_FILE = "threads.json"
CHECKPOINTS_DIRNAME = "checkpoints"
DEFAULT_LIST_LIMIT = 10


class MissingThreadIdError(ValueError):
    """Raised when a write is attempted without a thread id."""

    def __init__(self) -> None:
        super().__init__("thread_id is required")


def atomic_write(path: Path, content: str) -> None:
    """
    Write content to a temporary sibling, then move it over path.

    A crash leaves either the previous complete file or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + TEMP_SUFFIX)
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _generate_thread_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"thread-{int(time.time() * 1000)}-{suffix}"


def _is_valid_component(value: str | None) -> bool:
    return bool(value) and "/" not in value and "\\" not in value and not value.startswith(".")


def _check_component(value: str, what: str) -> str:
    if not _is_valid_component(value):
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


def _default_title(now: datetime) -> str:
    return f"Conversation {now.astimezone():%Y-%m-%d %H:%M:%S}"


class CheckpointStore:
    """
    Stores conversation snapshots per thread.

    Layout under base_dir::

        threads.json                                  thread index
        checkpoints/<thread_id>/<checkpoint_id>.json  checkpoint records
        checkpoints/<thread_id>/<checkpoint_id>-writes.json  pending writes

    The in-memory thread index is owned by this instance and guarded by a
    lock; callers must serialise commits to the same thread.
    """

    def __init__(self, base_dir: str | Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.base_dir = Path(base_dir)
        self.checkpoints_dir = self.base_dir / CHECKPOINTS_DIRNAME
        self.index_path = self.base_dir / INDEX_FILE
        self._clock = clock
        self._lock = threading.RLock()
        self._threads: dict[str, Thread] = {}
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        self._load_index()

    # ------------------------------------------------------------------
    # Paths and index persistence
    # ------------------------------------------------------------------

    def _thread_dir(self, thread_id: str) -> Path:
        return self.checkpoints_dir / _check_component(thread_id, "thread id")

    def _checkpoint_path(self, thread_id: str, checkpoint_id: str) -> Path:
        name = _check_component(checkpoint_id, "checkpoint id") + FILE_EXTENSION
        return self._thread_dir(thread_id) / name

    def _writes_path(self, thread_id: str, checkpoint_id: str) -> Path:
        name = _check_component(checkpoint_id, "checkpoint id") + WRITES_SUFFIX
        return self._thread_dir(thread_id) / name

    def _load_index(self) -> None:
        if not self.index_path.exists():
            return
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Error loading thread index %s: %s", self.index_path, exc)
            return
        if not isinstance(data, list):
            logger.error("Thread index %s is not a list; ignoring it", self.index_path)
            return
        for item in data:
            try:
                thread = Thread.model_validate(item)
            except ValueError as exc:
                logger.warning("Skipping invalid thread index entry %r: %s", item, exc)
                continue
            self._threads[thread.thread_id] = thread
        logger.info("Loaded %d thread(s) from %s", len(self._threads), self.index_path)

    def _save_index(self) -> None:
        payload = [t.model_dump(mode="json", by_alias=True) for t in self._threads.values()]
        self._write(self.index_path, json.dumps(payload, indent=2))

    def _write(self, path: Path, content: str) -> None:
        try:
            atomic_write(path, content)
        except OSError as exc:
            error = AgentError(
                f"Failed to write {path.name}",
                ErrorKind.CHECKPOINT_SAVE_ERROR,
                {"path": str(path), "original_message": str(exc)},
                False,
                exc,
            )
            log_error(error)
            raise error from exc

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def create_thread(self, title: str | None = None) -> str:
        """Register a new thread and return its id."""
        now = self._clock()
        with self._lock:
            thread_id = _generate_thread_id()
            while thread_id in self._threads:
                thread_id = _generate_thread_id()
            self._threads[thread_id] = Thread(
                thread_id=thread_id,
                title=title or _default_title(now),
                created_at=now,
                updated_at=now,
                message_count=0,
            )
            self._save_index()
        logger.info("Created thread %s", thread_id)
        return thread_id

    def get_thread(self, thread_id: str) -> Thread | None:
        with self._lock:
            thread = self._threads.get(thread_id)
            return thread.model_copy() if thread is not None else None

    def list_threads(self) -> list[Thread]:
        """All threads, most recently updated first."""
        with self._lock:
            threads = [t.model_copy() for t in self._threads.values()]
        threads.sort(key=lambda t: t.updated_at, reverse=True)
        return threads

    def update_thread_title(self, thread_id: str, title: str) -> None:
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                return
            thread.title = title
            thread.updated_at = self._clock()
            self._save_index()

    def delete_thread(self, thread_id: str) -> None:
        """Remove a thread, its checkpoints and pending writes. No-op when absent."""
        with self._lock:
            thread_dir = self.checkpoints_dir / thread_id if _is_valid_component(thread_id) else None
            if thread_dir is not None and thread_dir.exists():
                try:
                    shutil.rmtree(thread_dir)
                except OSError as exc:
                    error = AgentError(
                        "Failed to delete thread checkpoints",
                        ErrorKind.CHECKPOINT_SAVE_ERROR,
                        {"thread_id": thread_id, "original_message": str(exc)},
                        False,
                        exc,
                    )
                    log_error(error)
                    raise error from exc
            if self._threads.pop(thread_id, None) is not None:
                self._save_index()
                logger.info("Deleted thread %s", thread_id)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def put(
        self,
        thread_id: str | None,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata | None = None,
        *,
        parent_checkpoint_id: str | None = None,
    ) -> CheckpointConfig:
        """Persist a checkpoint and update the thread index. Returns its address."""
        if not thread_id:
            raise MissingThreadIdError()
        prepared = checkpoint.model_copy(deep=True)
        if not prepared.id:
            prepared.id = f"checkpoint-{int(time.time() * 1000)}"
        meta = metadata or CheckpointMetadata()
        path = self._checkpoint_path(thread_id, prepared.id)
        content = encode_record(prepared, meta, parent_checkpoint_id)

        with self._lock:
            self._write(path, content)
            now = self._clock()
            thread = self._threads.get(thread_id)
            if thread is None:
                thread = Thread(thread_id=thread_id, title=_default_title(now), created_at=now, updated_at=now)
                self._threads[thread_id] = thread
            else:
                thread.updated_at = now
            if isinstance(prepared.channel_values.get("messages"), list):
                thread.message_count = len(prepared.channel_values["messages"])
            self._save_index()

        logger.debug(
            "Saved checkpoint %s for thread %s (%d messages)",
            prepared.id,
            thread_id,
            len(prepared.messages),
        )
        return CheckpointConfig(thread_id=thread_id, checkpoint_id=prepared.id)

    def _read_tuple(self, thread_id: str, path: Path) -> CheckpointTuple | None:
        checkpoint_id = path.name[: -len(FILE_EXTENSION)]
        try:
            content = path.read_text(encoding="utf-8")
            record = decode_record(content)
        except (OSError, UnicodeDecodeError, CorruptRecordError) as exc:
            logger.warning("Skipping unreadable checkpoint file %s: %s", path, exc)
            return None
        written_at = record.written_at
        if not written_at:
            try:
                written_at = path.stat().st_mtime_ns
            except OSError:
                written_at = 0
        parent = (
            CheckpointConfig(thread_id=thread_id, checkpoint_id=record.parent_checkpoint_id)
            if record.parent_checkpoint_id
            else None
        )
        return CheckpointTuple(
            config=CheckpointConfig(thread_id=thread_id, checkpoint_id=checkpoint_id),
            checkpoint=record.checkpoint,
            metadata=record.metadata,
            parent_config=parent,
            written_at=written_at,
        )

    def _checkpoint_files(self, thread_id: str) -> list[Path]:
        if not _is_valid_component(thread_id):
            return []
        thread_dir = self._thread_dir(thread_id)
        if not thread_dir.is_dir():
            return []
        return [
            p
            for p in thread_dir.iterdir()
            if p.is_file() and p.name.endswith(FILE_EXTENSION) and not p.name.endswith(WRITES_SUFFIX)
        ]

    def _load_tuples(self, thread_id: str) -> list[CheckpointTuple]:
        """Every readable checkpoint of a thread, newest first."""
        tuples = []
        for path in self._checkpoint_files(thread_id):
            item = self._read_tuple(thread_id, path)
            if item is not None:
                tuples.append(item)
        tuples.sort(key=lambda t: t.sort_key, reverse=True)
        return tuples

    def get_tuple(self, config: CheckpointConfig) -> CheckpointTuple | None:
        """The pinned checkpoint when config names one, otherwise the latest."""
        if not config.thread_id:
            return None
        if config.checkpoint_id:
            if not (_is_valid_component(config.thread_id) and _is_valid_component(config.checkpoint_id)):
                return None
            path = self._checkpoint_path(config.thread_id, config.checkpoint_id)
            if not path.is_file():
                return None
            return self._read_tuple(config.thread_id, path)
        tuples = self._load_tuples(config.thread_id)
        return tuples[0] if tuples else None

    def get_latest(self, thread_id: str) -> Checkpoint | None:
        item = self.get_tuple(CheckpointConfig(thread_id=thread_id))
        return item.checkpoint if item is not None else None

    def get_by_id(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        item = self.get_tuple(CheckpointConfig(thread_id=thread_id, checkpoint_id=checkpoint_id))
        return item.checkpoint if item is not None else None

    def list_checkpoints(
        self,
        thread_id: str,
        limit: int | None = DEFAULT_LIST_LIMIT,
        before: str | None = None,
    ) -> Iterator[CheckpointTuple]:
        """
        Yield a thread's checkpoints newest first.

        before is a checkpoint id cursor: only checkpoints older than it are
        yielded. limit=None yields everything.
        """
        if not thread_id:
            return
        tuples = self._load_tuples(thread_id)
        if before is not None:
            ids = [t.config.checkpoint_id for t in tuples]
            if before not in ids:
                return
            tuples = tuples[ids.index(before) + 1 :]
        count = 0
        for item in tuples:
            if limit is not None and count >= limit:
                break
            yield item
            count += 1

    # ------------------------------------------------------------------
    # Pending writes
    # ------------------------------------------------------------------

    def put_writes(
        self,
        thread_id: str | None,
        checkpoint_id: str,
        task_id: str,
        writes: list[PendingWrite] | list[tuple[str, Any]],
    ) -> None:
        """Stage a task's intermediate output next to a checkpoint, replacing that task's prior entry."""
        if not thread_id:
            raise MissingThreadIdError()
        normalized = [
            w if isinstance(w, PendingWrite) else PendingWrite(channel=w[0], value=w[1]) for w in writes
        ]
        path = self._writes_path(thread_id, checkpoint_id)
        with self._lock:
            existing = self._read_writes_file(path)
            existing[task_id] = [w.model_dump(mode="json") for w in normalized]
            self._write(path, json.dumps(existing, indent=2))

    def _read_writes_file(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable pending writes %s: %s", path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get_pending_writes(self, thread_id: str, checkpoint_id: str) -> dict[str, list[PendingWrite]]:
        if not (_is_valid_component(thread_id) and _is_valid_component(checkpoint_id)):
            return {}
        with self._lock:
            raw = self._read_writes_file(self._writes_path(thread_id, checkpoint_id))
        result: dict[str, list[PendingWrite]] = {}
        for task_id, items in raw.items():
            if not isinstance(items, list):
                continue
            result[task_id] = [PendingWrite.model_validate(i) for i in items if isinstance(i, dict)]
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_older_than(self, retention: timedelta, *, now: datetime | None = None) -> int:
        """Delete threads whose last update precedes now - retention."""
        cutoff = (now or self._clock()) - retention
        with self._lock:
            stale = [t.thread_id for t in self._threads.values() if t.updated_at < cutoff]
            for thread_id in stale:
                title = self._threads[thread_id].title
                self.delete_thread(thread_id)
                logger.info("Deleted old thread: %s (%s)", thread_id, title)
        if stale:
            logger.info("Pruned %d old conversation(s)", len(stale))
        return len(stale)

    def prune_old_checkpoints(self, retention_days: float) -> int:
        return self.prune_older_than(timedelta(days=retention_days))

    def trim(self, thread_id: str, max_messages: int) -> bool:
        """
        Supersede the latest checkpoint with one holding only the last
        max_messages messages. Returns False when nothing needed trimming.
        """
        if max_messages < 0:
            raise ValueError("max_messages must be >= 0")
        latest = self.get_tuple(CheckpointConfig(thread_id=thread_id))
        if latest is None:
            return False
        messages = latest.checkpoint.messages
        if len(messages) <= max_messages:
            return False

        kept = messages[len(messages) - max_messages :]
        now_ts = self._clock().timestamp()
        ts: str | float = self._clock().isoformat()
        if now_ts <= latest.checkpoint.timestamp:
            ts = latest.checkpoint.timestamp + 0.001
        trimmed = Checkpoint(
            v=latest.checkpoint.v,
            ts=ts,
            channel_values={**latest.checkpoint.channel_values, "messages": kept},
            channel_versions=dict(latest.checkpoint.channel_versions),
        )
        metadata = CheckpointMetadata(
            source="update",
            step=latest.metadata.step + 1,
            parents={"": latest.checkpoint.id},
        )
        self.put(thread_id, trimmed, metadata, parent_checkpoint_id=latest.config.checkpoint_id)
        logger.info(
            "Trimmed conversation history for thread %s: %d -> %d messages",
            thread_id,
            len(messages),
            len(kept),
        )
        return True

    def storage_stats(self) -> StorageStats:
        threads = self.list_threads()
        total_checkpoints = sum(len(self._load_tuples(t.thread_id)) for t in threads)
        return StorageStats(
            total_threads=len(threads),
            total_checkpoints=total_checkpoints,
            oldest_thread_updated_at=min((t.updated_at for t in threads), default=None),
            newest_thread_updated_at=max((t.updated_at for t in threads), default=None),
        )

    list = list_checkpoints


__all__ = [
    "CheckpointStore",
    "MissingThreadIdError",
    "atomic_write",
]
