"""Utilities for loading the agent's system instructions."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import DEFAULT_SYSTEM_PROMPT_PATH

BUILTIN_SYSTEM_PROMPT = """You are a helpful assistant with access to tools.

BEHAVIOR:
- When a question can be answered better with one of your tools, call it.
- Quote relevant passages from tool results when answering.
- Be transparent about which tools and sources you used.
- If a tool reports an error, explain what went wrong and continue if you can.

CONTEXT:
- You maintain conversation history across sessions.
- You can reference earlier parts of the conversation.
"""

_cached_prompt: Optional[str] = None


def _read_file(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return ""
    return text.strip()


def get_default_system_prompt() -> str:
    """Return the system prompt, cached after first read.

    The prompt file overrides the built-in instructions when it exists and is non-empty.
    """
    global _cached_prompt
    if _cached_prompt is None:
        _cached_prompt = _read_file(DEFAULT_SYSTEM_PROMPT_PATH) or BUILTIN_SYSTEM_PROMPT
    return _cached_prompt
