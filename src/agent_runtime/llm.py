"""LLM facade: provider resolution and the single call_llm entry point."""

from __future__ import annotations

from typing import Any, Tuple

from .config import DEFAULT_MODEL
from .models import LLMRequest, LLMResponse
from .providers import AnthropicProvider, LLMProvider, OllamaProvider, OpenAIProvider

_provider_cache: dict[str, LLMProvider] = {}


def split_model(model: str | None) -> Tuple[str, str]:
    """
    Split a model string into (provider name, model name).

    Expected formats:
    - "provider:model_name" (e.g. "anthropic:claude-sonnet-4-5", "openai:gpt-4.1-nano")
    - "model_name" (no colon) → treated as an Ollama model.
    """
    effective = (model or DEFAULT_MODEL).strip()
    if ":" in effective:
        provider_name, raw_model = effective.split(":", 1)
        provider_name = provider_name.strip().lower()
        model_name = raw_model.strip() or split_model(DEFAULT_MODEL)[1]
        return provider_name, model_name
    return "ollama", effective


def get_provider_for_model(model: str | None) -> Tuple[LLMProvider, str]:
    """Resolve (cached provider, underlying model name) from a model string."""
    provider_name, model_name = split_model(model)
    if provider_name not in _provider_cache:
        if provider_name in ("anthropic", "claude"):
            _provider_cache[provider_name] = AnthropicProvider(default_model=model_name)
        elif provider_name == "openai":
            _provider_cache[provider_name] = OpenAIProvider(default_model=model_name)
        else:
            # Unknown / fallback → Ollama
            _provider_cache[provider_name] = OllamaProvider(default_model=model_name)
    return _provider_cache[provider_name], model_name


def set_provider(provider_name: str, provider: LLMProvider) -> None:
    """Register the provider used for a provider prefix."""
    _provider_cache[provider_name.strip().lower()] = provider


async def call_llm(
    request: LLMRequest,
    provider: LLMProvider | None = None,
    **kwargs: Any,
) -> LLMResponse:
    """One completion call. Uses the explicit provider if given, otherwise infers it from the model."""
    if provider is not None:
        _, model_name = split_model(request.model)
    else:
        provider, model_name = get_provider_for_model(request.model)
    return await provider.chat(
        request.messages,
        system=request.system,
        model=model_name,
        tools=request.tools,
        max_tokens=request.max_tokens,
        **kwargs,
    )
