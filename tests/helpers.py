"""Test helpers: literal SSE fixture streams and scripted providers."""

import asyncio
import json
from typing import Any

import httpx

from parley.content import Content
from parley.llm.openai import OpenAIStream
from parley.llm.schemas import Message, Role, StreamStatus, ToolCall

# ---------------------------------------------------------------------------
# SSE builders
# ---------------------------------------------------------------------------


def sse(*payloads: Any) -> bytes:
    """Encode payloads as SSE ``data:`` lines. Strings are sent verbatim."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=body)


def openai_chunk(
    content: str | None = None,
    *,
    role: str | None = None,
    tool: dict[str, Any] | None = None,
    finish: str | None = None,
) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    if tool is not None:
        delta["tool_calls"] = [tool]
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
    }


def openai_tool(index: int, arguments: str, *, id: str | None = None, name: str | None = None) -> dict[str, Any]:
    tool: dict[str, Any] = {"index": index, "function": {"arguments": arguments}}
    if id is not None:
        tool["id"] = id
        tool["type"] = "function"
    if name is not None:
        tool["function"]["name"] = name
    return tool


def openai_usage(prompt: int, completion: int) -> dict[str, Any]:
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "choices": [],
        "usage": {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion},
    }


def openai_text_body(*parts: str, usage: tuple[int, int] = (10, 5)) -> bytes:
    """A complete text-only completion."""
    return sse(
        openai_chunk("", role="assistant"),
        *(openai_chunk(part) for part in parts),
        openai_chunk(finish="stop"),
        openai_usage(*usage),
        "[DONE]",
    )


def openai_tools_body(*calls: tuple[str, str, str], usage: tuple[int, int] = (20, 10)) -> bytes:
    """A completion requesting ``calls`` given as (id, name, arguments)."""
    chunks: list[Any] = [openai_chunk(role="assistant")]
    for index, (call_id, name, arguments) in enumerate(calls):
        chunks.append(openai_chunk(tool=openai_tool(index, "", id=call_id, name=name)))
        chunks.append(openai_chunk(tool=openai_tool(index, arguments)))
    chunks += [openai_chunk(finish="tool_calls"), openai_usage(*usage), "[DONE]"]
    return sse(*chunks)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Answers each generate() with the next scripted response.

    A script entry is an SSE body (decoded by the real OpenAI decoder), an
    exception (returned as a setup error) or a ready-made stream object.
    """

    company = "Scripted"

    def __init__(self, *script: Any, model: str = "gpt-4o"):
        self.model = model
        self._script = list(script)
        self.calls: list[tuple[Content | None, list[Message]]] = []

    async def generate(self, system_prompt, messages, toolbox):
        self.calls.append((system_prompt, list(messages)))
        entry = self._script.pop(0)
        if isinstance(entry, Exception):
            return OpenAIStream(self.model, err=entry)
        if isinstance(entry, bytes):
            return OpenAIStream(self.model, sse_response(entry))
        return entry


class StalledStream:
    """Yields one text status, then blocks until ``release`` is set."""

    def __init__(self, text: str = "partial"):
        self.release = asyncio.Event()
        self.closed = False
        self.err = None
        self.text = text
        self.message = Message(role=Role.ASSISTANT, content=Content.from_text(text))
        self.tool_call = ToolCall(id="", name="")
        self.usage = (0, 0)
        self.cost_usd = 0.0

    async def statuses(self):
        try:
            yield StreamStatus.TEXT
            await self.release.wait()
        finally:
            self.closed = True


async def collect(updates) -> list:
    return [update async for update in updates]
