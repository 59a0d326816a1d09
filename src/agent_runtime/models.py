"""Data models for messages, LLM responses and tools."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A model-issued request to invoke one tool."""

    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """A single message in a conversation."""

    role: str  # "user" | "assistant" | "tool"
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    @field_validator("role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        value = value.strip().lower()
        if value == "human":
            return "user"
        if value == "ai":
            return "assistant"
        return value

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role="assistant", content=content, tool_calls=tool_calls or [])

    @classmethod
    def tool_result(cls, call: ToolCall, content: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=call.id, name=call.name)


_LANGCHAIN_ROLES = {
    "HumanMessage": "user",
    "AIMessage": "assistant",
    "ToolMessage": "tool",
    "SystemMessage": "system",
}


def _from_langchain(item: dict[str, Any]) -> Message:
    """Read a LangChain-serialized message ({"lc": 1, "id": [...], "kwargs": {...}})."""
    class_name = (item.get("id") or ["HumanMessage"])[-1]
    kwargs = item.get("kwargs") or {}
    content = kwargs.get("content", "")
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return Message(
        role=_LANGCHAIN_ROLES.get(class_name, "user"),
        content=content or "",
        tool_calls=[
            ToolCall(id=tc.get("id") or "", name=tc.get("name") or "", args=tc.get("args") or {})
            for tc in kwargs.get("tool_calls") or []
        ],
        tool_call_id=kwargs.get("tool_call_id"),
        name=kwargs.get("name"),
    )


def messages_from_dicts(items: list[Any]) -> list[Message]:
    """Rebuild messages stored in a checkpoint's channel values."""
    out: list[Message] = []
    for m in items:
        if isinstance(m, Message):
            out.append(m)
        elif isinstance(m, dict) and "lc" in m and "kwargs" in m:
            out.append(_from_langchain(m))
        else:
            out.append(Message.model_validate(m))
    return out


def messages_to_dicts(messages: list[Message]) -> list[dict[str, Any]]:
    return [m.model_dump(mode="json") for m in messages]


def request_history(messages: list[Message]) -> list[Message]:
    """
    The part of a history a provider will accept.

    A trimmed history can open mid tool round: assistant turns before the
    first user message are skipped, and tool results whose call is no longer
    in the history are dropped. The stored history is left untouched.
    """
    kept: list[Message] = []
    seen_calls: set[str] = set()
    started = False
    for m in messages:
        if m.role == "user":
            started = True
        elif m.role == "assistant":
            if not started:
                continue
            seen_calls.update(c.id for c in m.tool_calls)
        elif m.role == "tool" and m.tool_call_id not in seen_calls:
            continue
        kept.append(m)
    return kept


# ---------------------------------------------------------------------------
# LLM responses
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


ContentBlock = Union[TextBlock, ToolUseBlock]


class LLMResponse(BaseModel):
    """Ordered content blocks returned by one completion call."""

    blocks: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None
    model: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)


@dataclass
class LLMRequest:
    """Everything a provider needs for one completion call."""

    model: str
    system: str
    messages: list[Message]
    tools: list[ToolDef]
    max_tokens: int = 4096


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass
class ToolDef:
    """Tool descriptor handed to LLM providers."""

    name: str
    description: str
    input_schema: dict[str, Any]  # JSON Schema

    def to_anthropic_tool(self) -> dict[str, Any]:
        schema = dict(self.input_schema or {})
        schema.setdefault("type", "object")
        return {"name": self.name, "description": self.description, "input_schema": schema}

    def to_tool_schema(self) -> dict[str, Any]:
        """Standard function-calling schema (OpenAI-style)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }
