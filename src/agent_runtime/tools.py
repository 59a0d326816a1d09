"""Tool interface and built-in tools."""

from __future__ import annotations

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .models import ToolDef


class BaseTool(ABC):
    """Base class for tools exposed to the model."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema for the accepted arguments."""
        ...

    @abstractmethod
    async def invoke(self, args: dict[str, Any]) -> str:
        """Run the tool. The return value is inserted verbatim as the tool result."""
        ...

    def to_def(self) -> ToolDef:
        return ToolDef(name=self.name, description=self.description, input_schema=self.input_schema)


class FunctionTool(BaseTool):
    """Adapts a plain function (sync or async) to the tool interface."""

    def __init__(
        self,
        func: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        self._func = func
        self._name = name or func.__name__
        self._description = description or inspect.getdoc(func) or ""
        self._input_schema = input_schema or {"type": "object", "properties": {}, "required": []}

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._input_schema

    async def invoke(self, args: dict[str, Any]) -> str:
        if inspect.iscoroutinefunction(self._func):
            result = await self._func(**args)
        else:
            result = await asyncio.to_thread(self._func, **args)
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)


# ---------------------------------------------------------------------------
# Built-in tool: get current time
# ---------------------------------------------------------------------------


class GetTimeTool(BaseTool):
    """Returns current UTC time as ISO string."""

    @property
    def name(self) -> str:
        return "get_time"

    @property
    def description(self) -> str:
        return "Get the current UTC date and time in ISO format."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}, "required": []}

    async def invoke(self, args: dict[str, Any]) -> str:
        return datetime.now(timezone.utc).isoformat()


def get_default_tools() -> list[BaseTool]:
    """Tools available when the caller supplies none."""
    return [GetTimeTool()]
