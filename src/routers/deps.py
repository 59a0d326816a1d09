"""Shared dependencies for the HTTP routers."""

from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException

from src.agent_runtime import AgentLoop, AgentSettings, create_agent_loop, get_default_tools, load_settings
from src.checkpoint_store import CheckpointStore
from src.resilience import AgentError, ErrorKind


# Failures of the upstream LLM service; everything else is ours.
_UPSTREAM_KINDS = {
    ErrorKind.AUTH_INVALID,
    ErrorKind.RATE_LIMITED,
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.SERVER_ERROR,
}


@lru_cache(maxsize=1)
def get_settings() -> AgentSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_store() -> CheckpointStore:
    storage = get_settings().storage
    storage.ensure_directories()
    return CheckpointStore(storage.checkpoint_dir)


@lru_cache(maxsize=1)
def get_agent_loop() -> AgentLoop:
    return create_agent_loop(get_store(), get_settings(), tools=get_default_tools())


def http_error(error: AgentError) -> HTTPException:
    status = 502 if error.kind in _UPSTREAM_KINDS else 500
    return HTTPException(status_code=status, detail=error.user_message)


def thread_not_found(thread_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
