"""Optional tracing around LLM calls."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Protocol

from src.resilience.errors import AgentError, ErrorKind, classify_error, log_error

from .models import LLMResponse, Message, ToolDef
from .providers.base import LLMProvider

logger = logging.getLogger(__name__)


class Tracer(Protocol):
    """Receives call metadata. Implementations may fail; failures are ignored."""

    def start(self, name: str, inputs: dict[str, Any]) -> str:
        ...

    def end(self, run_id: str, outputs: dict[str, Any] | None = None, error: str | None = None) -> None:
        ...


class LoggingTracer:
    """Reports LLM runs through the standard logger."""

    def __init__(self, project: str = "agent-runtime", level: int = logging.INFO) -> None:
        self.project = project
        self.level = level
        self._started: dict[str, float] = {}

    def start(self, name: str, inputs: dict[str, Any]) -> str:
        run_id = str(uuid.uuid4())
        self._started[run_id] = time.monotonic()
        logger.log(
            self.level,
            "[%s] run %s started: %s model=%s messages=%s tools=%s",
            self.project,
            run_id,
            name,
            inputs.get("model"),
            inputs.get("message_count"),
            inputs.get("tool_count"),
        )
        return run_id

    def end(self, run_id: str, outputs: dict[str, Any] | None = None, error: str | None = None) -> None:
        started = self._started.pop(run_id, None)
        elapsed = time.monotonic() - started if started is not None else 0.0
        if error:
            logger.log(self.level, "[%s] run %s failed after %.2fs: %s", self.project, run_id, elapsed, error)
        else:
            logger.log(self.level, "[%s] run %s finished in %.2fs: %s", self.project, run_id, elapsed, outputs or {})


def create_tracer(factory: Callable[[], Tracer]) -> Tracer | None:
    """Build a tracer. If construction fails the error is logged and None is returned."""
    try:
        return factory()
    except Exception as exc:
        log_error(
            AgentError(
                "Tracing initialization failed",
                ErrorKind.TRACING_ERROR,
                {"original_message": str(exc)},
                False,
                exc,
            )
        )
        return None


def _tracing_failed(exc: Exception) -> None:
    error = classify_error(exc)
    if error.kind is not ErrorKind.TRACING_ERROR:
        error = AgentError(
            "Tracing error",
            ErrorKind.TRACING_ERROR,
            {"original_message": str(exc)},
            False,
            exc,
        )
    log_error(error)


class TracedProvider(LLMProvider):
    """Wraps a provider so each chat call is reported to a tracer."""

    def __init__(self, inner: LLMProvider, tracer: Tracer, run_name: str = "agent_call") -> None:
        self.inner = inner
        self.tracer = tracer
        self.run_name = run_name
        self.name = inner.name

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
        run_id: str | None = None
        try:
            run_id = self.tracer.start(
                self.run_name,
                {"model": model, "message_count": len(messages), "tool_count": len(tools or [])},
            )
        except Exception as exc:
            _tracing_failed(exc)

        try:
            response = await self.inner.chat(
                messages, system=system, model=model, tools=tools, max_tokens=max_tokens, **kwargs
            )
        except Exception as exc:
            if run_id is not None:
                try:
                    self.tracer.end(run_id, error=str(exc))
                except Exception as trace_exc:
                    _tracing_failed(trace_exc)
            raise

        if run_id is not None:
            try:
                self.tracer.end(
                    run_id,
                    {
                        "stop_reason": response.stop_reason,
                        "blocks": [b.type for b in response.blocks],
                        "usage": response.usage,
                    },
                )
            except Exception as exc:
                _tracing_failed(exc)
        return response
