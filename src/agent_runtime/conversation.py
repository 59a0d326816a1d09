"""Active-conversation bookkeeping on top of the checkpoint store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from pydantic import BaseModel, Field, ValidationError

from src.checkpoint_store import CheckpointStore, StorageStats
from src.resilience import AgentError, ErrorKind

from .loop import AgentLoop
from .models import Message, messages_from_dicts

logger = logging.getLogger(__name__)


class Conversation(BaseModel):
    """A thread together with its current messages."""

    id: str
    title: str
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    message_count: int = 0


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0


class NoActiveConversationError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("No active conversation. Create or load a conversation first.")


class ConversationManager:
    """
    Tracks the conversation a client is working in.

    Messages held here are an in-memory view; they become durable only when
    the agent loop commits a checkpoint.
    """

    def __init__(self, store: CheckpointStore, loop: AgentLoop | None = None) -> None:
        self.store = store
        self.loop = loop
        self.current_thread_id: str | None = None
        self._current_messages: list[Message] = []

    def _load_messages(self, thread_id: str) -> list[Message]:
        latest = self.store.get_latest(thread_id)
        if latest is None:
            return []
        try:
            messages = messages_from_dicts(latest.messages)
        except ValidationError as exc:
            logger.error("Error loading messages for thread %s: %s", thread_id, exc)
            return []
        logger.info("Loaded %d messages for thread %s", len(messages), thread_id)
        return messages

    def _build(self, thread_id: str) -> Conversation | None:
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return None
        return Conversation(
            id=thread_id,
            title=thread.title,
            messages=list(self._current_messages),
            created_at=thread.created_at,
            updated_at=thread.updated_at,
            message_count=len(self._current_messages),
        )

    def get_current_conversation(self) -> Conversation | None:
        if self.current_thread_id is None:
            return None
        if self.store.get_thread(self.current_thread_id) is None:
            return None
        self._current_messages = self._load_messages(self.current_thread_id)
        return self._build(self.current_thread_id)

    def create_conversation(self, title: str | None = None) -> Conversation:
        thread_id = self.store.create_thread(title)
        self.current_thread_id = thread_id
        self._current_messages = []
        conversation = self._build(thread_id)
        if conversation is None:
            raise AgentError(
                f"Thread {thread_id} missing right after creation",
                ErrorKind.CHECKPOINT_LOAD_ERROR,
                {"thread_id": thread_id},
            )
        return conversation

    def load_conversation(self, thread_id: str) -> Conversation | None:
        if self.store.get_thread(thread_id) is None:
            return None
        self.current_thread_id = thread_id
        self._current_messages = self._load_messages(thread_id)
        return self._build(thread_id)

    def load_most_recent_or_create(self) -> Conversation:
        threads = self.store.list_threads()
        if threads:
            conversation = self.load_conversation(threads[0].thread_id)
            if conversation is not None:
                return conversation
        return self.create_conversation()

    def delete_conversation(self, thread_id: str) -> None:
        self.store.delete_thread(thread_id)
        if self.current_thread_id == thread_id:
            self.current_thread_id = None
            self._current_messages = []

    def list_conversations(self) -> list[ConversationSummary]:
        return [
            ConversationSummary(
                id=t.thread_id,
                title=t.title,
                created_at=t.created_at,
                updated_at=t.updated_at,
                message_count=t.message_count,
            )
            for t in self.store.list_threads()
        ]

    def update_conversation_title(self, thread_id: str, title: str) -> None:
        self.store.update_thread_title(thread_id, title)

    def get_current_messages(self) -> list[Message]:
        return list(self._current_messages)

    def add_message(self, message: Message) -> None:
        """Append to the in-memory view of the active conversation."""
        if self.current_thread_id is None:
            raise NoActiveConversationError()
        self._current_messages.append(message)

    def clear_current_messages(self) -> None:
        self._current_messages = []

    def sync_from_agent_result(self, messages: list[Message]) -> None:
        """Replace the in-memory view with the messages returned by a loop run."""
        if self.current_thread_id is None:
            raise NoActiveConversationError()
        self._current_messages = list(messages)

    def prune_old_conversations(self, retention_days: float) -> int:
        deleted = self.store.prune_old_checkpoints(retention_days)
        if self.current_thread_id is not None and self.store.get_thread(self.current_thread_id) is None:
            self.current_thread_id = None
            self._current_messages = []
        return deleted

    async def trim_conversation_history(self, thread_id: str, max_history_size: int) -> bool:
        """Keep the last max_history_size messages; goes through the loop's thread lock when one is attached."""
        if self.loop is not None:
            trimmed = await self.loop.trim(thread_id, max_history_size)
        else:
            trimmed = await asyncio.to_thread(self.store.trim, thread_id, max_history_size)
        if trimmed and thread_id == self.current_thread_id:
            self._current_messages = self._load_messages(thread_id)
        return trimmed

    def get_storage_stats(self) -> StorageStats:
        return self.store.storage_stats()
