"""Runtime configuration: paths, defaults and environment-driven settings."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

from main_config import (
    CHECKPOINT_DIR as _CHECKPOINT_DIR,
    DATA_DIR as _DATA_DIR,
    DEFAULT_SYSTEM_PROMPT_PATH as _DEFAULT_SYSTEM_PROMPT_PATH,
)

try:  # Best-effort .env loading
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:  # pragma: no cover - optional dependency
    pass

# Path objects for use in this package (main_config uses os.path strings)
DATA_DIR = Path(_DATA_DIR)
CHECKPOINT_DIR = Path(_CHECKPOINT_DIR)
DEFAULT_SYSTEM_PROMPT_PATH = Path(_DEFAULT_SYSTEM_PROMPT_PATH)

DEFAULT_MODEL = "anthropic:claude-sonnet-4-5"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_MAX_TOOL_ITERATIONS = 10
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_HISTORY_SIZE = 100


class RateLimitSettings(BaseModel):
    """Token bucket parameters for the LLM provider."""

    tokens_per_interval: int = Field(default=40, gt=0, description="Requests granted per interval.")
    interval: float = Field(default=60.0, gt=0, description="Refill interval in seconds.")
    max_tokens: int | None = Field(default=None, description="Bucket capacity; defaults to tokens_per_interval.")


class RetrySettings(BaseModel):
    """Backoff parameters for LLM calls. Delays are in seconds."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)


class StorageSettings(BaseModel):
    """Checkpoint storage location and housekeeping limits."""

    checkpoint_dir: Path = Field(default=CHECKPOINT_DIR, description="Root directory for thread index and checkpoints.")
    retention_days: float = Field(default=DEFAULT_RETENTION_DAYS, gt=0, description="Threads idle longer than this are pruned.")
    max_history_size: int = Field(default=DEFAULT_MAX_HISTORY_SIZE, ge=1, description="Messages kept when trimming a thread.")

    def ensure_directories(self) -> None:
        """Create the checkpoint directory if it does not exist."""
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)


class AgentSettings(BaseModel):
    """Top-level configuration for the agent core."""

    model: str = Field(default=DEFAULT_MODEL, description="LLM in 'provider:model' format.")
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    max_tool_iterations: int = Field(default=DEFAULT_MAX_TOOL_ITERATIONS, ge=1)
    tracing_enabled: bool = False
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


def _env(name: str) -> str | None:
    value = os.getenv(name)
    return value if value not in (None, "") else None


def _drop_none(values: dict) -> dict:
    return {k: v for k, v in values.items() if v is not None}


def load_settings() -> AgentSettings:
    """Build settings from AGENT_* environment variables over the defaults."""
    tracing = _env("AGENT_TRACING")
    return AgentSettings(
        **_drop_none(
            {
                "model": _env("AGENT_MODEL"),
                "max_tokens": _env("AGENT_MAX_TOKENS"),
                "max_tool_iterations": _env("AGENT_MAX_TOOL_ITERATIONS"),
                "tracing_enabled": tracing.lower() in ("1", "true", "yes", "on") if tracing else None,
            }
        ),
        rate_limit=RateLimitSettings(
            **_drop_none(
                {
                    "tokens_per_interval": _env("AGENT_RATE_LIMIT_TOKENS"),
                    "interval": _env("AGENT_RATE_LIMIT_INTERVAL"),
                    "max_tokens": _env("AGENT_RATE_LIMIT_MAX_TOKENS"),
                }
            )
        ),
        retry=RetrySettings(
            **_drop_none(
                {
                    "max_attempts": _env("AGENT_RETRY_MAX_ATTEMPTS"),
                    "base_delay": _env("AGENT_RETRY_BASE_DELAY"),
                    "max_delay": _env("AGENT_RETRY_MAX_DELAY"),
                }
            )
        ),
        storage=StorageSettings(
            **_drop_none(
                {
                    "checkpoint_dir": _env("AGENT_CHECKPOINT_DIR"),
                    "retention_days": _env("AGENT_RETENTION_DAYS"),
                    "max_history_size": _env("AGENT_MAX_HISTORY_SIZE"),
                }
            )
        ),
    )
