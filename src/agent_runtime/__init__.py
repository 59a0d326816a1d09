"""Agent runtime: checkpointed LLM-tool loop, providers and conversation management."""

from .config import AgentSettings, load_settings
from .conversation import Conversation, ConversationManager, NoActiveConversationError
from .llm import call_llm, get_provider_for_model, set_provider
from .loop import AgentLoop, LoopOptions, LoopResult, create_agent_loop, run_loop
from .models import LLMResponse, Message, TextBlock, ToolCall, ToolUseBlock
from .providers import AnthropicProvider, LLMProvider, OllamaProvider, OpenAIProvider
from .tools import BaseTool, FunctionTool, get_default_tools
from .tracing import LoggingTracer, TracedProvider

__all__ = [
    "AgentLoop",
    "AgentSettings",
    "AnthropicProvider",
    "BaseTool",
    "Conversation",
    "ConversationManager",
    "FunctionTool",
    "LLMProvider",
    "LLMResponse",
    "LoggingTracer",
    "LoopOptions",
    "LoopResult",
    "Message",
    "NoActiveConversationError",
    "OllamaProvider",
    "OpenAIProvider",
    "TextBlock",
    "ToolCall",
    "ToolUseBlock",
    "TracedProvider",
    "call_llm",
    "create_agent_loop",
    "get_default_tools",
    "get_provider_for_model",
    "load_settings",
    "run_loop",
    "set_provider",
]
