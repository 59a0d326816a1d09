"""Chat router: agent loop endpoint and thread management."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from src.agent_runtime import AgentLoop, AgentSettings
from src.checkpoint_store import CheckpointConfig, CheckpointStore, StorageStats, Thread
from src.resilience import AgentError

from .deps import get_agent_loop, get_settings, get_store, http_error, thread_not_found

router = APIRouter(prefix="/chat", tags=["chat"])
threads_router = APIRouter(prefix="/threads", tags=["threads"])


class ChatRequest(BaseModel):
    """Request body for POST /chat."""

    message: str = Field(..., description="User message")
    thread_id: str | None = Field(None, description="Optional thread id to continue")


class ChatResponse(BaseModel):
    """Response for POST /chat."""

    thread_id: str
    reply: str
    message_count: int = 0
    checkpoint_id: str | None = None
    error: str | None = Field(None, description="Error kind when the reply is a failure notice")


class ThreadOut(BaseModel):
    thread_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0

    @classmethod
    def from_thread(cls, thread: Thread) -> ThreadOut:
        return cls(
            thread_id=thread.thread_id,
            title=thread.title,
            created_at=thread.created_at,
            updated_at=thread.updated_at,
            message_count=thread.message_count,
        )


class CreateThreadRequest(BaseModel):
    title: str | None = None


class UpdateThreadRequest(BaseModel):
    title: str = Field(..., min_length=1)


class PruneRequest(BaseModel):
    retention_days: float | None = Field(None, gt=0, description="Defaults to the configured retention")


class PruneResponse(BaseModel):
    deleted: int


class TrimRequest(BaseModel):
    max_messages: int | None = Field(None, ge=0, description="Defaults to the configured max history size")


class TrimResponse(BaseModel):
    trimmed: bool


class MessagesResponse(BaseModel):
    thread_id: str
    checkpoint_id: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)


@router.post("", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    loop: AgentLoop = Depends(get_agent_loop),
    store: CheckpointStore = Depends(get_store),
) -> ChatResponse:
    """Run one agent turn and return the assistant reply. LLM failures come back as the reply text."""
    if request.thread_id is not None and store.get_thread(request.thread_id) is None:
        raise thread_not_found(request.thread_id)
    try:
        result = await loop.run(request.message, thread_id=request.thread_id)
    except AgentError as e:
        raise http_error(e) from e
    return ChatResponse(
        thread_id=result.thread_id,
        reply=result.reply,
        message_count=len(result.messages),
        checkpoint_id=result.checkpoint_id,
        error=result.error.kind.value if result.error is not None else None,
    )


# Fixed paths are registered before /{thread_id} so they are not captured by it.


@threads_router.get("/stats", response_model=StorageStats)
async def storage_stats(store: CheckpointStore = Depends(get_store)) -> StorageStats:
    return await asyncio.to_thread(store.storage_stats)


@threads_router.post("/prune", response_model=PruneResponse)
async def prune_threads(
    request: PruneRequest,
    store: CheckpointStore = Depends(get_store),
    settings: AgentSettings = Depends(get_settings),
) -> PruneResponse:
    days = request.retention_days or settings.storage.retention_days
    try:
        deleted = await asyncio.to_thread(store.prune_old_checkpoints, days)
    except AgentError as e:
        raise http_error(e) from e
    return PruneResponse(deleted=deleted)


@threads_router.get("", response_model=list[ThreadOut])
async def list_threads(store: CheckpointStore = Depends(get_store)) -> list[ThreadOut]:
    return [ThreadOut.from_thread(t) for t in store.list_threads()]


@threads_router.post("", response_model=ThreadOut, status_code=201)
async def create_thread(
    request: CreateThreadRequest,
    store: CheckpointStore = Depends(get_store),
) -> ThreadOut:
    try:
        thread_id = await asyncio.to_thread(store.create_thread, request.title)
    except AgentError as e:
        raise http_error(e) from e
    thread = store.get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=500, detail="Thread was not created")
    return ThreadOut.from_thread(thread)


@threads_router.get("/{thread_id}", response_model=ThreadOut)
async def get_thread(thread_id: str, store: CheckpointStore = Depends(get_store)) -> ThreadOut:
    thread = store.get_thread(thread_id)
    if thread is None:
        raise thread_not_found(thread_id)
    return ThreadOut.from_thread(thread)


@threads_router.patch("/{thread_id}", response_model=ThreadOut)
async def update_thread(
    thread_id: str,
    request: UpdateThreadRequest,
    store: CheckpointStore = Depends(get_store),
) -> ThreadOut:
    if store.get_thread(thread_id) is None:
        raise thread_not_found(thread_id)
    try:
        await asyncio.to_thread(store.update_thread_title, thread_id, request.title)
    except AgentError as e:
        raise http_error(e) from e
    thread = store.get_thread(thread_id)
    if thread is None:
        raise thread_not_found(thread_id)
    return ThreadOut.from_thread(thread)


@threads_router.delete("/{thread_id}", status_code=204)
async def delete_thread(thread_id: str, store: CheckpointStore = Depends(get_store)) -> Response:
    """Delete a thread and its checkpoints. Deleting an absent thread succeeds."""
    try:
        await asyncio.to_thread(store.delete_thread, thread_id)
    except AgentError as e:
        raise http_error(e) from e
    return Response(status_code=204)


@threads_router.get("/{thread_id}/messages", response_model=MessagesResponse)
async def get_messages(thread_id: str, store: CheckpointStore = Depends(get_store)) -> MessagesResponse:
    if store.get_thread(thread_id) is None:
        raise thread_not_found(thread_id)
    latest = await asyncio.to_thread(store.get_tuple, CheckpointConfig(thread_id=thread_id))
    if latest is None:
        return MessagesResponse(thread_id=thread_id)
    return MessagesResponse(
        thread_id=thread_id,
        checkpoint_id=latest.config.checkpoint_id,
        messages=latest.checkpoint.messages,
    )


@threads_router.post("/{thread_id}/trim", response_model=TrimResponse)
async def trim_thread(
    thread_id: str,
    request: TrimRequest,
    store: CheckpointStore = Depends(get_store),
    settings: AgentSettings = Depends(get_settings),
    loop: AgentLoop = Depends(get_agent_loop),
) -> TrimResponse:
    if store.get_thread(thread_id) is None:
        raise thread_not_found(thread_id)
    max_messages = request.max_messages
    if max_messages is None:
        max_messages = settings.storage.max_history_size
    try:
        trimmed = await loop.trim(thread_id, max_messages)
    except AgentError as e:
        raise http_error(e) from e
    return TrimResponse(trimmed=trimmed)
