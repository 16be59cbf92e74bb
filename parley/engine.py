"""Conversation engine: the multi-step streaming tool loop.

One chat() call runs steps until the model stops asking for tools:

1. Generate a response from the current history
2. Drain the decoder's statuses, publishing text and tool-start updates
3. Run each ready tool call of the finished turn in order
4. Append the assistant message with its results (tool-role messages first)
   and loop if any tools ran

The decoder is drained on its own task so a cancellation signal is seen
without waiting on slow network reads. History is only written by the
chat task itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from parley.config import Settings
from parley.content import Content
from parley.debug import DebugSink, StepSnapshot, YamlFileSink, null_sink
from parley.errors import ChatCancelled, ParleyError, UnknownToolError
from parley.llm.factory import create_provider
from parley.llm.provider import Provider, ProviderStream
from parley.llm.schemas import Message, Role, StreamStatus, ToolCall
from parley.tools import Tool, Toolbox, ToolResult, ToolRunner
from parley.updates import (
    ErrorUpdate,
    TextUpdate,
    ToolDoneUpdate,
    ToolStartUpdate,
    ToolStatusUpdate,
    UpdateStream,
)

logger = logging.getLogger(__name__)

SystemPrompt = Callable[[], Content | None]

_IMAGE_NOTICE = "Here is {names}. This is an automated message, not actually from the user."


@dataclass(frozen=True)
class _Turn:
    """What the drain task hands back once the decoder is exhausted."""

    message: Message
    ready: list[ToolCall]


class ConversationEngine:
    """Owns one conversation's history and drives chat calls against it.

    Not safe for concurrent chat() calls: one call must finish (its update
    stream closed) before the next starts.
    """

    def __init__(
        self,
        provider: Provider,
        *tools: Tool,
        system_prompt: SystemPrompt | Content | str | None = None,
        debug_sink: DebugSink | None = None,
    ) -> None:
        self.provider = provider
        self.toolbox = Toolbox(*tools)
        self.system_prompt = _prompt_accessor(system_prompt)
        self._debug_sink = debug_sink or null_sink
        self._messages: list[Message] = []
        self._total_cost = 0.0
        self._active = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *tools: Tool,
        system_prompt: SystemPrompt | Content | str | None = None,
    ) -> ConversationEngine:
        settings = settings or Settings()
        sink = YamlFileSink(settings.debug_file) if settings.debug_file else None
        return cls(create_provider(settings), *tools, system_prompt=system_prompt, debug_sink=sink)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def total_cost(self) -> float:
        """USD spent by this conversation so far."""
        return self._total_cost

    def add_tool(self, tool: Tool) -> None:
        self.toolbox.add(tool)

    def chat(
        self,
        message: str | Content,
        *,
        cancel: asyncio.Event | None = None,
        context: Any = None,
    ) -> UpdateStream:
        """Append a user message and start the step loop.

        Returns the stream of updates for this call; it closes when the loop
        stops. Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        if self._active:
            raise RuntimeError("a chat is already in progress on this conversation")

        content = Content.from_text(message) if isinstance(message, str) else message
        self._messages.append(Message(role=Role.USER, content=content))

        updates = UpdateStream()
        self._active = True
        task = loop.create_task(self._run(updates, cancel or asyncio.Event(), context))
        updates.bind(task)
        return updates

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _run(self, updates: UpdateStream, cancel: asyncio.Event, context: Any) -> None:
        try:
            while True:
                if cancel.is_set():
                    raise ChatCancelled("chat cancelled")
                if not await self._step(updates, cancel, context):
                    break
        except ParleyError as e:
            logger.warning("Chat stopped: %s", e)
            await updates.send(ErrorUpdate(error=e))
        except Exception as e:
            logger.exception("Unexpected error during chat step")
            await updates.send(ErrorUpdate(error=e))
        finally:
            self._active = False
            updates.close()

    async def _step(self, updates: UpdateStream, cancel: asyncio.Event, context: Any) -> bool:
        """Run one step; return True if tools ran and another step is due."""
        system_prompt = self.system_prompt()
        sent = list(self._messages)
        logger.debug("Step starting with %d messages", len(sent))

        stream = await self.provider.generate(system_prompt, sent, self.toolbox)
        if stream.err is not None:
            raise stream.err

        results: list[Message] = []
        try:
            turn = await self._consume(stream, updates, cancel)

            answered = {m.tool_call_id for m in self._messages if m.role == Role.TOOL}
            for call in turn.ready:
                results.extend(await self._run_tool(call, updates, cancel, context, answered))

            # Tool results must directly follow the assistant message; the
            # sort is stable so each group keeps call order.
            results.sort(key=lambda m: m.role != Role.TOOL)
            # The turn and its answers are committed together so history
            # never ends on unanswered tool calls.
            self._messages.append(turn.message)
            self._messages.extend(results)
            self._total_cost += stream.cost_usd
        finally:
            self._debug_sink(
                StepSnapshot(
                    received_message=stream.message,
                    tool_results=results,
                    sent_messages=sent,
                    system_prompt=system_prompt,
                    available_tools=self.toolbox.schemas(),
                )
            )

        return bool(turn.ready)

    async def _consume(self, stream: ProviderStream, updates: UpdateStream, cancel: asyncio.Event) -> _Turn:
        """Drain ``stream`` on a separate task, racing the cancel signal."""
        drain = asyncio.create_task(self._drain(stream, updates, cancel))
        cancelled = asyncio.create_task(cancel.wait())
        try:
            await asyncio.wait({drain, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not drain.done():
                drain.cancel()

        if drain.done() and not drain.cancelled():
            return drain.result()
        raise ChatCancelled("chat cancelled")

    async def _drain(self, stream: ProviderStream, updates: UpdateStream, cancel: asyncio.Event) -> _Turn:
        ready: list[ToolCall] = []
        async with aclosing(stream.statuses()) as statuses:
            async for status in statuses:
                if cancel.is_set():
                    raise ChatCancelled("chat cancelled")
                if status == StreamStatus.TEXT:
                    await updates.send(TextUpdate(text=stream.text))
                elif status == StreamStatus.TOOL_CALL_BEGIN:
                    name = stream.tool_call.name
                    tool = self.toolbox.get(name)
                    if tool is None:
                        raise UnknownToolError(name)
                    await updates.send(ToolStartUpdate(tool=tool))
                elif status == StreamStatus.TOOL_CALL_READY:
                    # Run only after the whole turn is in
                    ready.append(stream.tool_call)

        if stream.err is not None:
            raise stream.err
        return _Turn(message=stream.message, ready=ready)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _run_tool(
        self,
        call: ToolCall,
        updates: UpdateStream,
        cancel: asyncio.Event,
        context: Any,
        answered: set[str],
    ) -> list[Message]:
        tool = self.toolbox.get(call.name)
        if tool is None:
            logger.warning("Tool %s is no longer registered, call %s not run", call.name, call.id)
            answered.add(call.correlation_id)
            return _result_messages(call, ToolResult.failure(call.name, f"unknown tool: {call.name}"))

        if call.id and call.id in answered:
            logger.warning("Tool call %s (%s) has already been run, not running it again", call.id, call.name)
            result = ToolResult.failure(call.name, f"tool call {call.id} has already been run")
        else:

            async def on_status(status: str) -> None:
                await updates.send(ToolStatusUpdate(tool=tool, status=status))

            runner = ToolRunner(self.toolbox, on_status, context=context, cancelled=cancel.is_set)
            result = await self.toolbox.run(runner, call.name, call.arguments)

        await updates.send(ToolDoneUpdate(tool=tool, result=result))
        answered.add(call.correlation_id)
        return _result_messages(call, result)


def _result_messages(call: ToolCall, result: ToolResult) -> list[Message]:
    messages = [
        Message(
            role=Role.TOOL,
            content=Content.from_raw_json(result.json()),
            tool_call_id=call.correlation_id,
        )
    ]
    images = result.images()
    if images:
        # Tool messages cannot carry images, so they go in a user message
        names = ", ".join(image.name for image in images)
        content = Content.from_text(_IMAGE_NOTICE.format(names=names))
        for image in images:
            content.add_image(image.url)
        messages.append(Message(role=Role.USER, content=content))
    return messages


def _prompt_accessor(prompt: SystemPrompt | Content | str | None) -> SystemPrompt:
    if prompt is None:
        return lambda: None
    if isinstance(prompt, str):
        content = Content.from_text(prompt)
        return lambda: content
    if isinstance(prompt, Content):
        return lambda: prompt
    return prompt

