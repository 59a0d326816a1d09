"""Abstract LLM provider interface for the agent core."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..models import LLMResponse, Message, ToolDef


class LLMProvider(ABC):
    """
    Abstract LLM provider. Implement this to plug in any backend (Anthropic, OpenAI, etc.).

    The agent loop only depends on this interface.
    """

    name: str = "llm"

    @abstractmethod
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
        """
        One non-streaming completion.

        Returns the response as ordered content blocks: text blocks and
        tool-use blocks ({"id", "name", "input"}), in the order the provider
        produced them.
        """
        ...
