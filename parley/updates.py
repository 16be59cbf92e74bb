"""Progress updates of a chat call and the channel that delivers them.

A chat call publishes updates in causal order: an assistant turn's text
arrives before that turn's tool updates. The channel is unbuffered: send()
returns only once the consumer has taken the update, so a consumer that
stops reading stalls the engine.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Union

from parley.tools import Tool, ToolResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextUpdate:
    """A fragment of assistant text (a delta, not cumulative)."""

    text: str


@dataclass(frozen=True)
class ToolStartUpdate:
    """The model began a call to ``tool``; its arguments are still streaming."""

    tool: Tool


@dataclass(frozen=True)
class ToolStatusUpdate:
    """Progress reported by a running tool."""

    tool: Tool
    status: str


@dataclass(frozen=True)
class ToolDoneUpdate:
    tool: Tool
    result: ToolResult


@dataclass(frozen=True)
class ErrorUpdate:
    """The chat call failed; no further updates follow."""

    error: Exception


Update = Union[TextUpdate, ToolStartUpdate, ToolStatusUpdate, ToolDoneUpdate, ErrorUpdate]

_CLOSED = object()


class UpdateStream:
    """Async iterator over the updates of one chat call.

    Closed exactly once by the engine; iteration then ends. aclose() stops
    the engine task behind the stream when the caller loses interest.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._exhausted = False
        self._task: asyncio.Task | None = None

    def bind(self, task: asyncio.Task) -> None:
        """Attach the task producing this stream's updates."""
        self._task = task

    async def send(self, update: Update) -> None:
        """Publish an update and wait until the consumer has received it."""
        if self._closed:
            raise RuntimeError("update stream is closed")
        self._queue.put_nowait(update)
        await self._queue.join()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> UpdateStream:
        return self

    async def __anext__(self) -> Update:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        self._queue.task_done()
        if item is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def aclose(self) -> None:
        """Cancel the producing task and wait for it to finish."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Chat task cancelled by consumer")
