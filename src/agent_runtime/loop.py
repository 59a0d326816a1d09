"""Tool-calling agent loop with per-cycle checkpointing."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.checkpoint_store import (
    Checkpoint,
    CheckpointConfig,
    CheckpointMetadata,
    CheckpointStore,
    PendingWrite,
)
from src.resilience import (
    AgentError,
    ErrorKind,
    RateLimiter,
    RetryOptions,
    get_rate_limiter,
    log_error,
    set_rate_limiter,
    with_retry,
)

from .config import DEFAULT_MAX_TOKENS, DEFAULT_MAX_TOOL_ITERATIONS, DEFAULT_MODEL, AgentSettings
from .llm import call_llm, get_provider_for_model, split_model
from .models import (
    LLMRequest,
    LLMResponse,
    Message,
    TextBlock,
    ToolCall,
    ToolUseBlock,
    messages_from_dicts,
    messages_to_dicts,
    request_history,
)
from .providers import LLMProvider
from .system_prompt_loader import get_default_system_prompt
from .tools import BaseTool
from .tracing import LoggingTracer, TracedProvider, create_tracer

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    START = "start"
    AGENT = "agent"
    DECISION = "decision"
    TOOLS = "tools"
    END = "end"


@dataclass
class LoopOptions:
    """Options for the agent loop."""

    model: str = DEFAULT_MODEL
    max_tokens: int = DEFAULT_MAX_TOKENS
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    system_prompt: str | None = None
    retry: RetryOptions = field(default_factory=RetryOptions)
    stage_tool_results: bool = True


@dataclass
class LoopResult:
    """Outcome of one conversational turn."""

    thread_id: str
    reply: str
    messages: list[Message]
    checkpoint_id: str | None = None
    error: AgentError | None = None


def parse_response(response: LLMResponse) -> Message:
    """Fold content blocks into one assistant message: all text joined in order, all tool calls kept in order."""
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in response.blocks:
        if isinstance(block, TextBlock):
            text_parts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            tool_calls.append(
                ToolCall(id=block.id or f"call_{uuid.uuid4().hex[:12]}", name=block.name, args=block.input)
            )
    return Message.assistant("".join(text_parts), tool_calls)


def iteration_limit_message(limit: int) -> str:
    return (
        f"I stopped after {limit} rounds of tool use without reaching a final answer. "
        "Ask me to continue if you want me to keep going."
    )


class AgentLoop:
    """
    Drives START -> AGENT -> DECISION -> {TOOLS -> AGENT | END} for one thread.

    Every completed AGENT cycle (plus its tool round, if any) is committed as
    exactly one checkpoint. Turns on the same thread are serialised by a
    per-thread lock; different threads may run concurrently.
    """

    def __init__(
        self,
        store: CheckpointStore,
        tools: list[BaseTool] | None = None,
        options: LoopOptions | None = None,
        provider: LLMProvider | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.store = store
        self.tools = list(tools or [])
        self.options = options or LoopOptions()
        self.provider = provider
        self.rate_limiter = rate_limiter or get_rate_limiter(split_model(self.options.model)[0])
        self._tool_map = {t.name: t for t in self.tools}
        self._tool_defs = [t.to_def() for t in self.tools]
        self._thread_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def thread_lock(self, thread_id: str) -> AsyncIterator[None]:
        """Hold the thread's commit lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._thread_locks.get(thread_id)
        if lock is None:
            lock = self._thread_locks[thread_id] = asyncio.Lock()
        self._lock_users[thread_id] = self._lock_users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[thread_id] -= 1
            if self._lock_users[thread_id] == 0:
                del self._lock_users[thread_id]
                del self._thread_locks[thread_id]

    async def trim(self, thread_id: str, max_messages: int) -> bool:
        """Trim a thread's history, waiting for any turn in progress on it to commit first."""
        async with self.thread_lock(thread_id):
            return await asyncio.to_thread(self.store.trim, thread_id, max_messages)

    # ------------------------------------------------------------------
    # AGENT
    # ------------------------------------------------------------------

    async def _call_agent(self, messages: list[Message]) -> Message:
        request = LLMRequest(
            model=self.options.model,
            system=self.options.system_prompt or get_default_system_prompt(),
            messages=request_history(messages),
            tools=self._tool_defs,
            max_tokens=self.options.max_tokens,
        )
        await self.rate_limiter.remove_tokens(1)
        response = await with_retry(lambda: call_llm(request, self.provider), self.options.retry)
        return parse_response(response)

    # ------------------------------------------------------------------
    # TOOLS
    # ------------------------------------------------------------------

    async def _invoke_tool(self, call: ToolCall) -> str:
        tool = self._tool_map.get(call.name)
        if tool is None:
            return f"Error: Unknown tool: {call.name}"
        try:
            result = await tool.invoke(call.args)
        except Exception as exc:
            error = AgentError(
                f"Tool {call.name} failed",
                ErrorKind.TOOL_EXECUTION_ERROR,
                {"tool": call.name, "call_id": call.id, "original_message": str(exc)},
                False,
                exc,
            )
            log_error(error)
            return f"Error: {exc}"
        return result if isinstance(result, str) else str(result)

    async def _stage(self, thread_id: str, checkpoint_id: str, call: ToolCall, message: Message) -> None:
        """Best-effort staging of one tool result ahead of the commit."""
        try:
            await asyncio.to_thread(
                self.store.put_writes,
                thread_id,
                checkpoint_id,
                call.id,
                [PendingWrite(channel="messages", value=message.model_dump(mode="json"))],
            )
        except Exception as exc:
            logger.warning("Could not stage result of %s (%s): %s", call.name, call.id, exc)

    async def _run_tool(self, thread_id: str, checkpoint_id: str, call: ToolCall) -> Message:
        content = await self._invoke_tool(call)
        message = Message.tool_result(call, content)
        if self.options.stage_tool_results:
            await self._stage(thread_id, checkpoint_id, call, message)
        return message

    async def _run_tools(self, thread_id: str, checkpoint_id: str, calls: list[ToolCall]) -> list[Message]:
        # gather keeps call order regardless of completion order
        results = list(await asyncio.gather(*(self._run_tool(thread_id, checkpoint_id, c) for c in calls)))
        if self.options.stage_tool_results:
            results = await self._collect_staged(thread_id, checkpoint_id, calls, results)
        return results

    async def _collect_staged(
        self,
        thread_id: str,
        checkpoint_id: str,
        calls: list[ToolCall],
        results: list[Message],
    ) -> list[Message]:
        """Prefer the staged copy of each result, falling back to the in-memory one."""
        try:
            staged = await asyncio.to_thread(self.store.get_pending_writes, thread_id, checkpoint_id)
        except Exception as exc:
            logger.warning("Could not read staged tool results for %s: %s", checkpoint_id, exc)
            return results
        collected: list[Message] = []
        for call, fallback in zip(calls, results):
            writes = [w for w in staged.get(call.id, []) if w.channel == "messages"]
            if writes and isinstance(writes[-1].value, dict):
                collected.append(Message.model_validate(writes[-1].value))
            else:
                collected.append(fallback)
        return collected

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def _commit(
        self,
        thread_id: str,
        checkpoint_id: str,
        messages: list[Message],
        step: int,
        parent_id: str | None,
        extra_channels: dict[str, Any],
    ) -> str:
        checkpoint = Checkpoint(
            id=checkpoint_id,
            channel_values={**extra_channels, "messages": messages_to_dicts(messages)},
        )
        metadata = CheckpointMetadata(
            source="loop",
            step=step,
            parents={"": parent_id} if parent_id else {},
        )
        config = await asyncio.to_thread(
            self.store.put, thread_id, checkpoint, metadata, parent_checkpoint_id=parent_id
        )
        return config.checkpoint_id or checkpoint_id

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(self, user_message: str, thread_id: str | None = None) -> LoopResult:
        """Run one turn: append the user message, loop LLM/tools until a final answer, checkpoint each cycle."""
        if thread_id is None:
            thread_id = await asyncio.to_thread(self.store.create_thread)

        async with self.thread_lock(thread_id):
            latest = await asyncio.to_thread(self.store.get_tuple, CheckpointConfig(thread_id=thread_id))
            if latest is not None:
                messages = messages_from_dicts(latest.checkpoint.messages)
                extra_channels = {
                    k: v for k, v in latest.checkpoint.channel_values.items() if k != "messages"
                }
                step = latest.metadata.step
                parent_id = latest.config.checkpoint_id
            else:
                messages, extra_channels, step, parent_id = [], {}, -1, None

            messages.append(Message.user(user_message))
            state = LoopState.START
            error: AgentError | None = None
            assistant: Message | None = None
            iterations = 0

            while state is not LoopState.END:
                if state is LoopState.START:
                    state = LoopState.AGENT

                elif state is LoopState.AGENT:
                    checkpoint_id = str(uuid.uuid4())
                    try:
                        assistant = await self._call_agent(messages)
                    except AgentError as exc:
                        error = exc
                        logger.error("Agent call failed for thread %s: %s", thread_id, exc.message)
                        assistant = Message.assistant(exc.user_message)
                    messages.append(assistant)
                    state = LoopState.DECISION if error is None else LoopState.END
                    if error is not None:
                        step += 1
                        parent_id = await self._commit(
                            thread_id, checkpoint_id, messages, step, parent_id, extra_channels
                        )

                elif state is LoopState.DECISION:
                    if assistant is not None and assistant.tool_calls:
                        state = LoopState.TOOLS
                    else:
                        step += 1
                        parent_id = await self._commit(
                            thread_id, checkpoint_id, messages, step, parent_id, extra_channels
                        )
                        state = LoopState.END

                elif state is LoopState.TOOLS:
                    calls = assistant.tool_calls if assistant is not None else []
                    results = await self._run_tools(thread_id, checkpoint_id, calls)
                    messages.extend(results)
                    iterations += 1
                    if iterations >= self.options.max_tool_iterations:
                        logger.warning(
                            "Thread %s reached the tool iteration limit (%d)",
                            thread_id,
                            self.options.max_tool_iterations,
                        )
                        assistant = Message.assistant(iteration_limit_message(self.options.max_tool_iterations))
                        messages.append(assistant)
                        state = LoopState.END
                    else:
                        state = LoopState.AGENT
                    step += 1
                    parent_id = await self._commit(
                        thread_id, checkpoint_id, messages, step, parent_id, extra_channels
                    )

        reply = assistant.content if assistant is not None else ""
        return LoopResult(
            thread_id=thread_id,
            reply=reply,
            messages=messages,
            checkpoint_id=parent_id,
            error=error,
        )


def create_agent_loop(
    store: CheckpointStore,
    settings: AgentSettings | None = None,
    tools: list[BaseTool] | None = None,
    provider: LLMProvider | None = None,
    system_prompt: str | None = None,
) -> AgentLoop:
    """Build an AgentLoop from settings: retry policy, rate limit and optional tracing."""
    cfg = settings or AgentSettings()
    options = LoopOptions(
        model=cfg.model,
        max_tokens=cfg.max_tokens,
        max_tool_iterations=cfg.max_tool_iterations,
        system_prompt=system_prompt,
        retry=RetryOptions(
            max_attempts=cfg.retry.max_attempts,
            base_delay=cfg.retry.base_delay,
            max_delay=cfg.retry.max_delay,
        ),
    )
    # One limiter per downstream API, shared by every loop built for it.
    target = split_model(cfg.model)[0]
    limiter = get_rate_limiter(target)
    max_tokens = cfg.rate_limit.max_tokens or cfg.rate_limit.tokens_per_interval
    if (
        limiter.tokens_per_interval != cfg.rate_limit.tokens_per_interval
        or limiter.interval != cfg.rate_limit.interval
        or limiter.max_tokens != max_tokens
    ):
        limiter = RateLimiter(
            tokens_per_interval=cfg.rate_limit.tokens_per_interval,
            interval=cfg.rate_limit.interval,
            max_tokens=max_tokens,
        )
        set_rate_limiter(target, limiter)
    tracer = create_tracer(LoggingTracer) if cfg.tracing_enabled else None
    if tracer is not None:
        inner = provider or get_provider_for_model(cfg.model)[0]
        provider = TracedProvider(inner, tracer)
    return AgentLoop(store, tools=tools, options=options, provider=provider, rate_limiter=limiter)


async def run_loop(
    user_message: str,
    thread_id: str | None = None,
    tools: list[BaseTool] | None = None,
    options: LoopOptions | None = None,
    *,
    store: CheckpointStore,
    provider: LLMProvider | None = None,
) -> tuple[str, str, list[Message]]:
    """
    Run one turn and return (thread_id, final_assistant_content, full_messages).
    """
    loop = AgentLoop(store, tools=tools, options=options, provider=provider)
    result = await loop.run(user_message, thread_id=thread_id)
    return result.thread_id, result.reply, result.messages
