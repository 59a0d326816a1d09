"""Anthropic Messages API provider."""

from __future__ import annotations

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
    from anthropic import AsyncAnthropic
except ImportError:  # pragma: no cover - dependency error surfaced at runtime
    AsyncAnthropic = None  # type: ignore[assignment,misc]


class AnthropicProvider(LLMProvider):
    """Claude models through the Messages API."""

    name = "anthropic"

    def __init__(
        self,
        default_model: str = "claude-sonnet-4-5",
        api_key: str | None = None,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.default_model = default_model
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY") or ""
        self.base_url = base_url or os.getenv("ANTHROPIC_BASE_URL")
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if AsyncAnthropic is None:
                raise RuntimeError(
                    "anthropic package is not installed. Install it or remove AnthropicProvider usage."
                )
            kwargs: dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = AsyncAnthropic(**kwargs)
        return self._client

    @staticmethod
    def _to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """
        Convert internal messages into Anthropic turns.

        Tool results travel as tool_result blocks in a user turn; consecutive
        tool results are merged into one turn.
        """
        out: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "tool":
                block = {"type": "tool_result", "tool_use_id": m.tool_call_id or "", "content": m.content or ""}
                last = out[-1] if out else None
                if (
                    last is not None
                    and last["role"] == "user"
                    and isinstance(last["content"], list)
                    and all(b.get("type") == "tool_result" for b in last["content"])
                ):
                    last["content"].append(block)
                else:
                    out.append({"role": "user", "content": [block]})
                continue
            if m.role == "assistant" and m.tool_calls:
                blocks: list[dict[str, Any]] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                for tc in m.tool_calls:
                    blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.args})
                out.append({"role": "assistant", "content": blocks})
                continue
            if m.role == "assistant" and not m.content:
                # The API rejects empty assistant turns.
                continue
            role = "assistant" if m.role == "assistant" else "user"
            out.append({"role": role, "content": m.content or ""})
        return out

    @staticmethod
    def _parse_blocks(content: Any) -> list[TextBlock | ToolUseBlock]:
        blocks: list[TextBlock | ToolUseBlock] = []
        for block in content or []:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                blocks.append(TextBlock(text=getattr(block, "text", "") or ""))
            elif block_type == "tool_use":
                raw_input = getattr(block, "input", None)
                blocks.append(
                    ToolUseBlock(
                        id=getattr(block, "id", "") or "",
                        name=getattr(block, "name", "") or "",
                        input=raw_input if isinstance(raw_input, dict) else {},
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
        client = self._get_client()
        params: dict[str, Any] = {
            "model": model or self.default_model,
            "max_tokens": max_tokens,
            "messages": self._to_anthropic_messages(messages),
            **kwargs,
        }
        if system:
            params["system"] = system
        if tools:
            params["tools"] = [t.to_anthropic_tool() for t in tools]

        resp = await client.messages.create(**params)
        usage = getattr(resp, "usage", None)
        return LLMResponse(
            blocks=self._parse_blocks(getattr(resp, "content", None)),
            stop_reason=getattr(resp, "stop_reason", None),
            model=getattr(resp, "model", None),
            usage={
                "input_tokens": getattr(usage, "input_tokens", None),
                "output_tokens": getattr(usage, "output_tokens", None),
            }
            if usage is not None
            else {},
        )
