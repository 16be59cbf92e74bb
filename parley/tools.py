"""Tool registry: tools, their results and the runner handed to them.

Provides:
- Tool / tool(): a named coroutine with a pydantic parameter model whose
  JSON schema is advertised to the model
- Toolbox: registers tools, looks them up and runs calls by name
- ToolRunner: what a running tool sees (status reporting, caller context)
- ToolResult: JSON payload plus optional images

Tool failures never raise out of Toolbox.run(); they come back as error
results so the model can see what went wrong.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], Awaitable[None]]
ToolFunc = Callable[["ToolRunner", Any], Awaitable["ToolResult"]]


@dataclass(frozen=True)
class Image:
    """A named image artifact produced by a tool. ``url`` may be a data URI."""

    name: str
    url: str


class ToolResult:
    """Outcome of one tool call."""

    def __init__(
        self,
        label: str,
        *,
        data: Any = None,
        error: str | None = None,
        images: Sequence[Image] = (),
    ) -> None:
        self.label = label
        self.data = data
        self.error = error
        self._images = list(images)

    @classmethod
    def success(cls, label: str, data: Any = None, images: Sequence[Image] = ()) -> ToolResult:
        return cls(label, data=data, images=images)

    @classmethod
    def failure(cls, label: str, error: str) -> ToolResult:
        return cls(label, error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def json(self) -> str:
        """Serialized result as sent back to the model."""
        if self.error is not None:
            return json.dumps({"error": self.error})
        return json.dumps(self.data, default=str)

    def images(self) -> list[Image]:
        return list(self._images)

    def __repr__(self) -> str:
        if self.error is not None:
            return f"ToolResult({self.label!r}, error={self.error!r})"
        return f"ToolResult({self.label!r}, images={len(self._images)})"


class ToolRunner:
    """Handed to a running tool.

    ``context`` is whatever the caller passed to chat(); ``report()`` forwards
    progress text to the caller as a status update.
    """

    def __init__(
        self,
        toolbox: Toolbox,
        on_status: StatusCallback | None = None,
        *,
        context: Any = None,
        cancelled: Callable[[], bool] | None = None,
    ) -> None:
        self.toolbox = toolbox
        self.context = context
        self._on_status = on_status
        self._cancelled = cancelled

    async def report(self, status: str) -> None:
        if self._on_status is not None:
            await self._on_status(status)

    @property
    def cancelled(self) -> bool:
        return self._cancelled is not None and self._cancelled()


class Tool:
    """A capability the model can call by name."""

    def __init__(
        self,
        name: str,
        description: str,
        params: type[BaseModel],
        fn: ToolFunc,
    ) -> None:
        self.name = name
        self.description = description
        self.params = params
        self._fn = fn

    def schema(self) -> dict[str, Any]:
        """Function schema: {name, description, parameters}."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.params.model_json_schema(),
        }

    async def run(self, runner: ToolRunner, arguments: str | bytes) -> ToolResult:
        """Validate the raw JSON arguments and call the tool."""
        try:
            params = self.params.model_validate_json(arguments or b"{}")
        except ValidationError as e:
            return ToolResult.failure(self.name, f"invalid arguments: {e}")
        try:
            return await self._fn(runner, params)
        except Exception as e:
            logger.exception("Tool %s failed", self.name)
            return ToolResult.failure(self.name, f"tool error: {e}")

    def __repr__(self) -> str:
        return f"Tool({self.name!r})"


def tool(name: str, description: str, params: type[BaseModel]) -> Callable[[ToolFunc], Tool]:
    """Decorator turning ``async def fn(runner, params)`` into a Tool."""

    def decorate(fn: ToolFunc) -> Tool:
        return Tool(name, description, params, fn)

    return decorate


class Toolbox:
    """Registers tools and dispatches calls to them by name."""

    def __init__(self, *tools: Tool) -> None:
        self._tools: dict[str, Tool] = {}
        for t in tools:
            self.add(t)

    def add(self, t: Tool) -> None:
        if t.name in self._tools:
            raise ValueError(f"tool {t.name!r} is already registered")
        self._tools[t.name] = t
        logger.debug("Registered tool %s", t.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def schemas(self) -> list[dict[str, Any]]:
        return [t.schema() for t in self._tools.values()]

    async def run(self, runner: ToolRunner, name: str, arguments: str | bytes) -> ToolResult:
        t = self._tools.get(name)
        if t is None:
            return ToolResult.failure(name, f"unknown tool: {name}")
        return await t.run(runner, arguments)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
