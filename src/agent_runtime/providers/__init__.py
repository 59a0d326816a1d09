"""LLM providers: pluggable backends for the agent loop."""

from .anthropic_provider import AnthropicProvider
from .base import LLMProvider
from .ollama import OllamaProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "OllamaProvider",
    "OpenAIProvider",
]
