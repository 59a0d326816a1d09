"""Tests for the agent loop: state transitions, tools, retries, checkpoint commits."""
from __future__ import annotations

import asyncio
import tempfile
import unittest
from typing import Any
from unittest.mock import AsyncMock, patch

from src.agent_runtime import (
    AgentLoop,
    AgentSettings,
    FunctionTool,
    LLMProvider,
    LLMResponse,
    LoopOptions,
    Message,
    TextBlock,
    ToolUseBlock,
    TracedProvider,
    create_agent_loop,
    run_loop,
)
from src.agent_runtime.config import RateLimitSettings, RetrySettings
from src.agent_runtime.loop import iteration_limit_message, parse_response
from src.agent_runtime.models import messages_to_dicts
from src.checkpoint_store import Checkpoint, CheckpointConfig, CheckpointStore
from src.resilience import ErrorKind, RateLimiter, RetryOptions
from src.resilience.errors import USER_MESSAGES


class ScriptedProvider(LLMProvider):
    """Returns (or raises) the scripted items in order; the last one repeats."""

    name = "scripted"

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: list[list[Message]] = []
        self.systems: list[str | None] = []

    async def chat(self, messages, *, system=None, model=None, tools=None, max_tokens=4096, **kwargs):
        self.calls.append(list(messages))
        self.systems.append(system)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item


class GatedProvider(LLMProvider):
    """Blocks inside chat until released, so a turn can be held mid-flight."""

    name = "gated"

    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def chat(self, messages, *, system=None, model=None, tools=None, max_tokens=4096, **kwargs):
        self.entered.set()
        await self.release.wait()
        return text(self.reply)


def text(content: str) -> LLMResponse:
    return LLMResponse(blocks=[TextBlock(text=content)], stop_reason="end_turn")


def tool_use(*calls: tuple[str, str, dict], content: str = "") -> LLMResponse:
    blocks: list = [TextBlock(text=content)] if content else []
    blocks += [ToolUseBlock(id=call_id, name=name, input=args) for call_id, name, args in calls]
    return LLMResponse(blocks=blocks, stop_reason="tool_use")


async def slow_echo(value: str) -> str:
    await asyncio.sleep(0.05)
    return f"slow:{value}"


async def fast_echo(value: str) -> str:
    return f"fast:{value}"


def failing_tool() -> str:
    raise RuntimeError("tool exploded")


ECHO_SCHEMA = {"type": "object", "properties": {"value": {"type": "string"}}, "required": ["value"]}


class LoopTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = CheckpointStore(self._tmp.name)
        self.tools = [
            FunctionTool(slow_echo, input_schema=ECHO_SCHEMA),
            FunctionTool(fast_echo, input_schema=ECHO_SCHEMA),
            FunctionTool(failing_tool, description="Always fails"),
        ]

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def make_loop(self, provider: LLMProvider, **option_overrides: Any) -> AgentLoop:
        options = LoopOptions(
            system_prompt="You are a test assistant.",
            retry=RetryOptions(max_attempts=3, base_delay=0.001, max_delay=0.002),
            **option_overrides,
        )
        return AgentLoop(
            self.store,
            tools=self.tools,
            options=options,
            provider=provider,
            rate_limiter=RateLimiter(1000, 1.0),
        )

    def checkpoints(self, thread_id: str) -> list:
        return list(self.store.list(thread_id, limit=None))


class TestSimpleTurn(LoopTestCase):
    async def test_final_answer_commits_one_checkpoint(self) -> None:
        provider = ScriptedProvider(text("Hello there"))
        result = await self.make_loop(provider).run("Hi")

        self.assertEqual(result.reply, "Hello there")
        self.assertIsNone(result.error)
        self.assertEqual([m.role for m in result.messages], ["user", "assistant"])
        self.assertEqual(len(self.checkpoints(result.thread_id)), 1)
        self.assertEqual(self.store.get_thread(result.thread_id).message_count, 2)
        self.assertEqual(provider.systems, ["You are a test assistant."])

    async def test_resumes_existing_history(self) -> None:
        provider = ScriptedProvider(text("first"), text("second"))
        loop = self.make_loop(provider)
        first = await loop.run("one")
        second = await loop.run("two", thread_id=first.thread_id)

        self.assertEqual(second.thread_id, first.thread_id)
        self.assertEqual([m.content for m in provider.calls[1]], ["one", "first", "two"])
        self.assertEqual(len(second.messages), 4)
        latest = self.store.get_tuple(CheckpointConfig(thread_id=first.thread_id))
        self.assertEqual(latest.parent_config.checkpoint_id, first.checkpoint_id)
        self.assertEqual(latest.metadata.step, 1)

    async def test_rate_limiter_token_taken_per_agent_call(self) -> None:
        provider = ScriptedProvider(tool_use(("c1", "fast_echo", {"value": "x"})), text("done"))
        loop = self.make_loop(provider)
        loop.rate_limiter = AsyncMock()
        await loop.run("go")
        self.assertEqual(loop.rate_limiter.remove_tokens.await_count, 2)


class TestToolRounds(LoopTestCase):
    async def test_tool_results_keep_call_order(self) -> None:
        provider = ScriptedProvider(
            tool_use(
                ("call-slow", "slow_echo", {"value": "a"}),
                ("call-fast", "fast_echo", {"value": "b"}),
                content="Let me check.",
            ),
            text("All done"),
        )
        result = await self.make_loop(provider).run("run both")

        roles = [m.role for m in result.messages]
        self.assertEqual(roles, ["user", "assistant", "tool", "tool", "assistant"])
        tool_messages = result.messages[2:4]
        self.assertEqual([m.tool_call_id for m in tool_messages], ["call-slow", "call-fast"])
        self.assertEqual([m.content for m in tool_messages], ["slow:a", "fast:b"])
        self.assertEqual(result.messages[1].content, "Let me check.")
        self.assertEqual(result.reply, "All done")

        # One checkpoint per completed cycle.
        self.assertEqual(len(self.checkpoints(result.thread_id)), 2)
        second_request = provider.calls[1]
        self.assertEqual(second_request[-1].content, "fast:b")

    async def test_tool_results_are_staged_before_commit(self) -> None:
        provider = ScriptedProvider(tool_use(("c1", "fast_echo", {"value": "z"})), text("ok"))
        result = await self.make_loop(provider).run("stage")
        first_cycle = self.checkpoints(result.thread_id)[-1]
        staged = self.store.get_pending_writes(result.thread_id, first_cycle.config.checkpoint_id)
        self.assertIn("c1", staged)
        self.assertEqual(staged["c1"][0].value["content"], "fast:z")

    async def test_tool_failure_is_reported_to_model(self) -> None:
        provider = ScriptedProvider(
            tool_use(("c1", "failing_tool", {}), ("c2", "no_such_tool", {})),
            text("Recovered"),
        )
        result = await self.make_loop(provider).run("try tools")
        contents = [m.content for m in result.messages if m.role == "tool"]
        self.assertEqual(contents, ["Error: tool exploded", "Error: Unknown tool: no_such_tool"])
        self.assertEqual(result.reply, "Recovered")

    async def test_iteration_limit_ends_with_message(self) -> None:
        provider = ScriptedProvider(tool_use(("loop", "fast_echo", {"value": "again"})))
        result = await self.make_loop(provider, max_tool_iterations=2).run("never stop")

        self.assertEqual(len(provider.calls), 2)
        self.assertEqual(result.reply, iteration_limit_message(2))
        self.assertEqual(result.messages[-1].role, "assistant")
        self.assertEqual(len(self.checkpoints(result.thread_id)), 2)
        latest = self.store.get_latest(result.thread_id)
        self.assertEqual(latest.messages[-1]["content"], iteration_limit_message(2))


class TestFailures(LoopTestCase):
    async def test_retry_exhaustion_becomes_visible_message(self) -> None:
        provider = ScriptedProvider(Exception("503 Service Unavailable"))
        result = await self.make_loop(provider).run("hello?")

        self.assertEqual(len(provider.calls), 3)
        self.assertEqual(result.reply, USER_MESSAGES[ErrorKind.SERVER_ERROR])
        self.assertEqual(result.error.kind, ErrorKind.SERVER_ERROR)
        latest = self.store.get_latest(result.thread_id)
        self.assertEqual([m["role"] for m in latest.messages], ["user", "assistant"])
        self.assertEqual(latest.messages[-1]["content"], USER_MESSAGES[ErrorKind.SERVER_ERROR])
        self.assertEqual(len(self.checkpoints(result.thread_id)), 1)

    async def test_non_retryable_failure_is_not_retried(self) -> None:
        provider = ScriptedProvider(Exception("401 invalid api key"))
        result = await self.make_loop(provider).run("hello?")
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(result.error.kind, ErrorKind.AUTH_INVALID)

    async def test_transient_failure_then_success(self) -> None:
        provider = ScriptedProvider(Exception("rate limit exceeded"), text("made it"))
        result = await self.make_loop(provider).run("retry me")
        self.assertEqual(result.reply, "made it")
        self.assertIsNone(result.error)

    async def test_failed_thread_remains_resumable(self) -> None:
        provider = ScriptedProvider(Exception("401"), text("back online"))
        loop = self.make_loop(provider)
        failed = await loop.run("first")
        resumed = await loop.run("second", thread_id=failed.thread_id)
        self.assertEqual(resumed.reply, "back online")
        self.assertEqual(len(resumed.messages), 4)


class TestConcurrency(LoopTestCase):
    async def test_same_thread_turns_are_serialised(self) -> None:
        provider = ScriptedProvider(text("a"), text("b"))
        loop = self.make_loop(provider)
        thread_id = self.store.create_thread()
        await asyncio.gather(loop.run("one", thread_id=thread_id), loop.run("two", thread_id=thread_id))
        latest = self.store.get_latest(thread_id)
        self.assertEqual(len(latest.messages), 4)
        self.assertEqual(len(provider.calls[1]), 3)

    async def test_trim_waits_for_turn_in_progress(self) -> None:
        thread_id = self.store.create_thread()
        history = [Message.user(f"m{i}") for i in range(50)]
        self.store.put(thread_id, Checkpoint(channel_values={"messages": messages_to_dicts(history)}))
        provider = GatedProvider("late answer")
        loop = self.make_loop(provider)

        turn = asyncio.create_task(loop.run("hi", thread_id=thread_id))
        await provider.entered.wait()
        trim = asyncio.create_task(loop.trim(thread_id, 10))
        await asyncio.sleep(0.05)
        self.assertFalse(trim.done())

        provider.release.set()
        result = await turn
        self.assertTrue(await trim)
        self.assertEqual(len(result.messages), 52)
        latest = self.store.get_latest(thread_id)
        self.assertEqual(len(latest.messages), 10)
        self.assertEqual(latest.messages[-1]["content"], "late answer")

    async def test_thread_locks_are_released_when_idle(self) -> None:
        provider = ScriptedProvider(text("a"), text("b"))
        loop = self.make_loop(provider)
        thread_id = self.store.create_thread()
        await asyncio.gather(loop.run("one", thread_id=thread_id), loop.run("two", thread_id=thread_id))
        await loop.trim(thread_id, 1)
        self.assertEqual(loop._thread_locks, {})
        self.assertEqual(loop._lock_users, {})


class TestTrimmedHistory(LoopTestCase):
    async def test_turn_after_trim_inside_tool_round(self) -> None:
        provider = ScriptedProvider(tool_use(("c1", "fast_echo", {"value": "x"})), text("done"), text("fresh"))
        loop = self.make_loop(provider)
        first = await loop.run("go")
        self.assertEqual([m.role for m in first.messages], ["user", "assistant", "tool", "assistant"])

        self.assertTrue(await loop.trim(first.thread_id, 2))
        second = await loop.run("next", thread_id=first.thread_id)

        self.assertIsNone(second.error)
        self.assertEqual(second.reply, "fresh")
        self.assertEqual([m.content for m in provider.calls[2]], ["next"])
        self.assertEqual([m.role for m in second.messages], ["tool", "assistant", "user", "assistant"])


class TestParseResponse(unittest.TestCase):
    def test_text_blocks_concatenated_in_any_order(self) -> None:
        response = LLMResponse(
            blocks=[
                ToolUseBlock(id="t1", name="a", input={"x": 1}),
                TextBlock(text="Hello, "),
                ToolUseBlock(id="t2", name="b", input={}),
                TextBlock(text="world"),
            ]
        )
        message = parse_response(response)
        self.assertEqual(message.content, "Hello, world")
        self.assertEqual([c.id for c in message.tool_calls], ["t1", "t2"])
        self.assertEqual(message.tool_calls[0].args, {"x": 1})

    def test_missing_call_id_is_generated(self) -> None:
        message = parse_response(LLMResponse(blocks=[ToolUseBlock(id="", name="a")]))
        self.assertTrue(message.tool_calls[0].id.startswith("call_"))


class TestFactories(unittest.IsolatedAsyncioTestCase):
    async def test_run_loop_returns_triple(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = CheckpointStore(tmp)
            thread_id, reply, messages = await run_loop(
                "hi",
                options=LoopOptions(system_prompt="sys"),
                store=store,
                provider=ScriptedProvider(text("hey")),
            )
            self.assertEqual(reply, "hey")
            self.assertEqual(len(messages), 2)
            self.assertIsNotNone(store.get_thread(thread_id))

    async def test_create_agent_loop_from_settings(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = CheckpointStore(tmp)
            settings = AgentSettings(
                model="openai:gpt-test",
                tracing_enabled=True,
                max_tool_iterations=4,
                rate_limit=RateLimitSettings(tokens_per_interval=7, interval=1.0),
                retry=RetrySettings(max_attempts=5, base_delay=0.5, max_delay=2.0),
            )
            provider = ScriptedProvider(text("traced"))
            loop = create_agent_loop(store, settings, provider=provider)
            again = create_agent_loop(store, settings, provider=provider)

            self.assertIsInstance(loop.provider, TracedProvider)
            self.assertIs(loop.rate_limiter, again.rate_limiter)
            self.assertEqual(loop.rate_limiter.tokens_per_interval, 7)
            self.assertEqual(loop.options.max_tool_iterations, 4)
            self.assertEqual(loop.options.retry.max_attempts, 5)

            loop.options.system_prompt = "sys"
            result = await loop.run("hi")
            self.assertEqual(result.reply, "traced")

    async def test_create_agent_loop_without_tracer_when_it_cannot_start(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            settings = AgentSettings(model="openai:gpt-test", tracing_enabled=True)
            provider = ScriptedProvider(text("plain"))
            with patch("src.agent_runtime.loop.LoggingTracer", side_effect=RuntimeError("no backend")):
                with self.assertLogs("src.resilience.errors", level="ERROR"):
                    loop = create_agent_loop(CheckpointStore(tmp), settings, provider=provider)
            self.assertIs(loop.provider, provider)


if __name__ == "__main__":
    unittest.main()
