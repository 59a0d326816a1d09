"""OpenAI LLM provider implementation."""

from __future__ import annotations

import json
import os
from typing import Any

from ..models import LLMResponse, Message, TextBlock, ToolDef, ToolUseBlock
from .base import LLMProvider

try:  # Best-effort .env loading
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:  # pragma: no cover - optional dependency
    pass

try:
    from openai import AsyncOpenAI
except ImportError:  # pragma: no cover - dependency error surfaced at runtime
    AsyncOpenAI = None  # type: ignore[assignment,misc]


class OpenAIProvider(LLMProvider):
    """OpenAI-backed LLM provider using the Chat Completions API."""

    name = "openai"

    def __init__(
        self,
        default_model: str = "gpt-4.1-nano",
        api_key: str | None = None,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.default_model = default_model
        self.api_key = api_key or os.getenv("OPENAI_API_KEY") or ""
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL")
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if AsyncOpenAI is None:
                raise RuntimeError(
                    "openai package is not installed. Install it or remove OpenAIProvider usage."
                )
            kwargs: dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    @staticmethod
    def _to_openai_messages(messages: list[Message], system: str | None) -> list[dict[str, Any]]:
        """Convert internal Message objects into OpenAI chat message dicts."""
        out: list[dict[str, Any]] = []
        if system:
            out.append({"role": "system", "content": system})
        for m in messages:
            base: dict[str, Any] = {"role": m.role, "content": m.content or ""}
            if m.role == "assistant" and m.tool_calls:
                base["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.args)},
                    }
                    for tc in m.tool_calls
                ]
            if m.role == "tool":
                base["tool_call_id"] = m.tool_call_id or ""
            out.append(base)
        return out

    @staticmethod
    def _parse_tool_calls(choice_message: Any) -> list[ToolUseBlock]:
        """Map OpenAI tool_calls into tool-use blocks."""
        blocks: list[ToolUseBlock] = []
        for tc in getattr(choice_message, "tool_calls", []) or []:
            fn = getattr(tc, "function", None)
            name = getattr(fn, "name", "") if fn is not None else ""
            raw_args = getattr(fn, "arguments", {}) if fn is not None else {}
            if isinstance(raw_args, str):
                try:
                    params = json.loads(raw_args) if raw_args else {}
                except json.JSONDecodeError:
                    params = {}
            elif isinstance(raw_args, dict):
                params = raw_args
            else:
                params = {}
            blocks.append(
                ToolUseBlock(
                    id=getattr(tc, "id", "") or f"call_{len(blocks)}",
                    name=name or "",
                    input=params if isinstance(params, dict) else {},
                )
            )
        return blocks

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
        """Non-streaming chat using OpenAI Chat Completions."""
        client = self._get_client()
        params: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": self._to_openai_messages(messages, system),
            "max_completion_tokens": max_tokens,
            **kwargs,
        }
        if tools:
            params["tools"] = [t.to_tool_schema() for t in tools]

        resp = await client.chat.completions.create(**params)
        if not resp.choices:
            return LLMResponse(blocks=[], model=getattr(resp, "model", None))

        choice = resp.choices[0]
        content = choice.message.content or ""
        if isinstance(content, list):
            # Multi-part content; join text fragments
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )

        blocks: list[TextBlock | ToolUseBlock] = []
        if content:
            blocks.append(TextBlock(text=content))
        blocks.extend(self._parse_tool_calls(choice.message))
        return LLMResponse(
            blocks=blocks,
            stop_reason=getattr(choice, "finish_reason", None),
            model=getattr(resp, "model", None),
        )
