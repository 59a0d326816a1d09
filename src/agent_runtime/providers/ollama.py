"""Ollama LLM provider implementation."""

from __future__ import annotations

import json
import uuid
from typing import Any

from ollama import AsyncClient

from ..models import LLMResponse, Message, TextBlock, ToolDef, ToolUseBlock
from .base import LLMProvider


def _message_to_chat(m: Message) -> dict[str, Any]:
    """Convert our Message to Ollama chat format."""
    out: dict[str, Any] = {"role": m.role, "content": m.content or ""}
    if m.tool_calls:
        out["tool_calls"] = [
            {"function": {"name": tc.name, "arguments": tc.args}} for tc in m.tool_calls
        ]
    if m.role == "tool" and m.name:
        out["tool_name"] = m.name
    return out


class OllamaProvider(LLMProvider):
    """Ollama-backed LLM provider."""

    name = "ollama"

    def __init__(self, default_model: str = "llama3.2", base_url: str | None = None):
        self.default_model = default_model
        self.base_url = base_url or "http://localhost:11434"

    async def chat(
        self,
        messages: list[Message],
        *,
        system: str | None = None,
        model: str | None = None,
        tools: list[ToolDef] | None = None,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> LLMResponse:
        client = AsyncClient(host=self.base_url)
        chat_messages = [_message_to_chat(m) for m in messages]
        if system:
            chat_messages.insert(0, {"role": "system", "content": system})
        ollama_tools = [t.to_tool_schema() for t in tools] if tools else None

        resp = await client.chat(
            model=model or self.default_model,
            messages=chat_messages,
            tools=ollama_tools,
            stream=False,
            options={"num_predict": max_tokens, **kwargs.pop("options", {})},
        )
        msg = getattr(resp, "message", None)
        blocks: list[TextBlock | ToolUseBlock] = []
        if msg is not None:
            text = getattr(msg, "content", None) or ""
            if text:
                blocks.append(TextBlock(text=text))
            for tc in getattr(msg, "tool_calls", None) or []:
                fn = getattr(tc, "function", None)
                if fn is None:
                    continue
                args = getattr(fn, "arguments", None)
                if isinstance(args, str):
                    try:
                        args = json.loads(args)
                    except json.JSONDecodeError:
                        args = {}
                if not isinstance(args, dict):
                    args = dict(args) if args else {}
                # Ollama does not assign call ids.
                blocks.append(
                    ToolUseBlock(id=str(uuid.uuid4()), name=getattr(fn, "name", "") or "", input=args)
                )
        return LLMResponse(
            blocks=blocks,
            stop_reason=getattr(resp, "done_reason", None),
            model=getattr(resp, "model", None),
        )
