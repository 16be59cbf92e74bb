"""OpenAI chat completions provider.

Each SSE ``data:`` line carries a chunk whose ``choices[0].delta`` holds a
text fragment and/or one tool-call delta addressed by ``index``. The stream
ends with a ``[DONE]`` sentinel. Readiness of a tool call is implied: a
new index starts the next call, and end of stream closes the last one.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Sequence
from dataclasses import replace
from typing import Any

import httpx

from parley.config import Settings
from parley.content import JSON, Content, ImageURL, Text
from parley.errors import ProviderError, StreamDecodeError
from parley.llm.provider import build_http_client, field, send_streaming, sse_data
from parley.llm.schemas import Message, Role, StreamStatus, ToolCall
from parley.pricing import cost
from parley.tools import Toolbox

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.openai.com/v1/chat/completions"

_DONE = "[DONE]"
_NORMAL_FINISH = frozenset({"stop", "tool_calls"})


class OpenAIProvider:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    company = "OpenAI"

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        max_completion_tokens: int = 0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.endpoint = endpoint
        self.max_completion_tokens = max_completion_tokens
        self._api_key = api_key
        self._owns_client = client is None
        self._http = client or build_http_client()
        if not api_key and endpoint == DEFAULT_ENDPOINT:
            logger.warning("OPENAI_API_KEY is not set -- API calls will fail")

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> OpenAIProvider:
        owns_client = client is None
        if client is None:
            client = build_http_client(settings.api_timeout_connect, settings.api_timeout_read)
            logger.info("httpx client initialized for %s", settings.openai_endpoint)
        provider = cls(
            settings.openai_api_key,
            settings.model,
            endpoint=settings.openai_endpoint,
            max_completion_tokens=settings.max_completion_tokens,
            client=client,
        )
        provider._owns_client = owns_client
        return provider

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def build_payload(
        self,
        system_prompt: Content | None,
        messages: Sequence[Message],
        toolbox: Toolbox | None,
    ) -> dict[str, Any]:
        api_messages: list[dict[str, Any]] = []
        if system_prompt is not None:
            api_messages.append({"role": "system", "content": _collapse(convert_content(system_prompt))})
        for message in messages:
            api_messages.extend(messages_to_wire(message))

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.max_completion_tokens > 0:
            payload["max_completion_tokens"] = self.max_completion_tokens
        if toolbox:
            payload["tools"] = [{"type": "function", "function": schema} for schema in toolbox.schemas()]
        return payload

    async def generate(
        self,
        system_prompt: Content | None,
        messages: Sequence[Message],
        toolbox: Toolbox | None,
    ) -> OpenAIStream:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            payload = self.build_payload(system_prompt, messages, toolbox)
            request = self._http.build_request("POST", self.endpoint, json=payload, headers=headers)
        except (TypeError, ValueError, httpx.InvalidURL) as e:
            return OpenAIStream(self.model, err=ProviderError(f"error encoding request: {e}", provider=self.company))

        logger.debug("Request: %s\n%s", self.endpoint, payload)
        try:
            response = await send_streaming(self._http, request, self.company)
        except ProviderError as e:
            return OpenAIStream(self.model, err=e)
        return OpenAIStream(self.model, response)


class OpenAIStream:
    """Decoder for one streamed chat completion."""

    def __init__(
        self,
        model: str,
        response: httpx.Response | None = None,
        *,
        err: Exception | None = None,
    ) -> None:
        self.model = model
        self._response = response
        self._err = err
        self._message = Message(role=Role.ASSISTANT)
        self._text = ""
        self._input_tokens = 0
        self._output_tokens = 0
        self._started = False

    @property
    def err(self) -> Exception | None:
        return self._err

    @property
    def message(self) -> Message:
        return self._message

    @property
    def text(self) -> str:
        return self._text

    @property
    def tool_call(self) -> ToolCall:
        if not self._message.tool_calls:
            return ToolCall(id="", name="")
        return self._message.tool_calls[-1]

    @property
    def usage(self) -> tuple[int, int]:
        return self._input_tokens, self._output_tokens

    @property
    def cost_usd(self) -> float:
        return cost(self.model, self._input_tokens, self._output_tokens)

    def _fail(self, reason: str) -> None:
        logger.debug("OpenAI stream failed: %s", reason)
        self._err = StreamDecodeError(reason)

    async def statuses(self) -> AsyncGenerator[StreamStatus, None]:
        if self._started:
            raise RuntimeError("stream can only be iterated once")
        self._started = True
        response = self._response
        if response is None or self._err is not None:
            return

        calls = self._message.tool_calls
        try:
            async for line in response.aiter_lines():
                data = sse_data(line)
                if data is None or data == _DONE:
                    continue
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError as e:
                    self._fail(f"error decoding chunk: {e}")
                    return
                if not isinstance(chunk, dict):
                    self._fail(f"unexpected chunk: {data[:100]}")
                    return

                # Usually a single report in the final, choice-less chunk
                usage = field(chunk.get("usage"), dict, "usage")
                if usage:
                    self._input_tokens += field(usage.get("prompt_tokens"), int, "usage.prompt_tokens") or 0
                    self._output_tokens += field(usage.get("completion_tokens"), int, "usage.completion_tokens") or 0

                choices = field(chunk.get("choices"), list, "choices")
                if not choices:
                    continue
                choice = field(choices[0], dict, "choice") or {}
                delta = field(choice.get("delta"), dict, "delta") or {}

                role = field(delta.get("role"), str, "delta.role")
                if role:
                    try:
                        self._message.role = Role(role)
                    except ValueError:
                        self._fail(f"unknown role {role!r}")
                        return

                self._text = field(delta.get("content"), str, "delta.content") or ""
                if self._text:
                    self._message.content.append_text(self._text)
                    yield StreamStatus.TEXT

                tool_deltas = field(delta.get("tool_calls"), list, "delta.tool_calls") or []
                if len(tool_deltas) > 1:
                    self._fail("received more than one tool call in a single chunk")
                    return
                if tool_deltas:
                    tool_delta = field(tool_deltas[0], dict, "tool call delta") or {}
                    index = field(tool_delta.get("index"), int, "tool call index") or 0
                    function = field(tool_delta.get("function"), dict, "function") or {}
                    fragment = (field(function.get("arguments"), str, "function.arguments") or "").encode()
                    if index == len(calls):
                        if calls:
                            yield StreamStatus.TOOL_CALL_READY
                        calls.append(
                            ToolCall(
                                id=field(tool_delta.get("id"), str, "tool call id") or "",
                                name=field(function.get("name"), str, "function.name") or "",
                            )
                        )
                        yield StreamStatus.TOOL_CALL_BEGIN
                        if fragment:
                            calls[-1] = replace(calls[-1], arguments=fragment)
                            yield StreamStatus.TOOL_CALL_DATA
                    elif index == len(calls) - 1:
                        if fragment:
                            calls[-1] = replace(calls[-1], arguments=calls[-1].arguments + fragment)
                            yield StreamStatus.TOOL_CALL_DATA
                    else:
                        self._fail(f"tool call index mismatch: got {index} with {len(calls)} open")
                        return

                finish_reason = field(choice.get("finish_reason"), str, "finish_reason")
                if finish_reason:
                    logger.debug("OpenAI finish_reason=%s", finish_reason)
                    if finish_reason not in _NORMAL_FINISH:
                        self._fail(f"unexpected finish reason: {finish_reason!r}")
                        return
        except StreamDecodeError as e:
            self._fail(str(e))
            return
        except httpx.HTTPError as e:
            self._fail(f"error reading stream: {e}")
            return
        finally:
            await response.aclose()

        if calls:
            yield StreamStatus.TOOL_CALL_READY


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def convert_content(content: Content) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for item in content:
        if isinstance(item, Text):
            parts.append({"type": "text", "text": item.text})
        elif isinstance(item, ImageURL):
            parts.append({"type": "image_url", "image_url": {"url": item.image_url, "detail": "auto"}})
        elif isinstance(item, JSON):
            parts.append({"type": "text", "text": item.raw()})
        else:
            raise TypeError(f"unhandled content item type {type(item).__name__}")
    return parts


def _collapse(parts: list[dict[str, Any]]) -> str | list[dict[str, Any]]:
    """A lone text part is sent as a plain string."""
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts


def _valid_json(raw: bytes) -> bool:
    try:
        json.loads(raw)
    except ValueError:
        return False
    return True


def messages_to_wire(message: Message) -> list[dict[str, Any]]:
    """Convert one history message to API messages.

    A tool result can only carry text, so any content after its first item
    goes out as an extra user message.
    """
    if message.role == Role.TOOL:
        primary = ""
        if message.content:
            first = message.content[0]
            if isinstance(first, Text):
                primary = first.text
            elif isinstance(first, JSON):
                primary = first.raw()
            elif isinstance(first, ImageURL):
                primary = first.image_url
        wire = [{"role": "tool", "content": primary, "tool_call_id": message.tool_call_id}]
        extra = convert_content(Content(message.content[1:]))
        if extra:
            wire.append({"role": "user", "content": _collapse(extra)})
        return wire

    parts = convert_content(message.content)
    if not parts and not message.tool_calls:
        return []

    msg: dict[str, Any] = {"role": str(message.role), "content": _collapse(parts) if parts else None}
    if message.role == Role.ASSISTANT and message.tool_calls:
        msg["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": call.arguments.decode() if _valid_json(call.arguments) else "{}",
                },
            }
            for call in message.tool_calls
        ]
    return [msg]
