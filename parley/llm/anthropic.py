"""Anthropic Messages API provider.

The stream is a sequence of typed events: message_start, then per content
block content_block_start / content_block_delta* / content_block_stop,
then message_delta (stop_reason, usage) and message_stop. A tool call is
ready when its block stops.

Notes on the event stream:
- ping events are keepalives and carry nothing
- stop_reason is in message_delta.delta, NOT message_start
- errors can arrive in-stream on an HTTP 200 as an ``error`` event
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

DEFAULT_ENDPOINT = "https://api.anthropic.com/v1/messages"

# Anthropic API version header
_API_VERSION = "2023-06-01"
_NORMAL_STOP = frozenset({"end_turn", "tool_use"})


class AnthropicProvider:
    """Streams responses from the Anthropic Messages API."""

    company = "Anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        max_tokens: int = 4096,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.endpoint = endpoint
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._owns_client = client is None
        self._http = client or build_http_client()
        if not api_key:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> AnthropicProvider:
        owns_client = client is None
        if client is None:
            client = build_http_client(settings.api_timeout_connect, settings.api_timeout_read)
            logger.info("httpx client initialized for %s", settings.anthropic_endpoint)
        provider = cls(
            settings.anthropic_api_key,
            settings.model,
            endpoint=settings.anthropic_endpoint,
            max_tokens=settings.max_tokens,
            client=client,
        )
        provider._owns_client = owns_client
        return provider

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        # OAT tokens (sk-ant-oat*) need Bearer auth plus beta headers;
        # regular API keys use x-api-key.
        if "sk-ant-oat" in self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    def build_payload(
        self,
        system_prompt: Content | None,
        messages: Sequence[Message],
        toolbox: Toolbox | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [message_to_wire(m) for m in messages],
            "stream": True,
        }
        if system_prompt is not None:
            payload["system"] = content_blocks(system_prompt)
        if toolbox:
            payload["tools"] = [
                {
                    "name": schema["name"],
                    "description": schema["description"],
                    "input_schema": schema["parameters"],
                }
                for schema in toolbox.schemas()
            ]
            payload["tool_choice"] = {"type": "auto"}
        return payload

    async def generate(
        self,
        system_prompt: Content | None,
        messages: Sequence[Message],
        toolbox: Toolbox | None,
    ) -> AnthropicStream:
        try:
            payload = self.build_payload(system_prompt, messages, toolbox)
            request = self._http.build_request("POST", self.endpoint, json=payload, headers=self._headers())
        except (TypeError, ValueError, httpx.InvalidURL) as e:
            return AnthropicStream(self.model, err=ProviderError(f"error encoding request: {e}", provider=self.company))

        logger.debug("Request: %s\n%s", self.endpoint, payload)
        try:
            response = await send_streaming(self._http, request, self.company)
        except ProviderError as e:
            return AnthropicStream(self.model, err=e)
        return AnthropicStream(self.model, response)


class AnthropicStream:
    """Decoder for one streamed Messages API response."""

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
        self._open_block: int | None = None  # content block index of the open tool call
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
        logger.debug("Anthropic stream failed: %s", reason)
        self._err = StreamDecodeError(reason)

    def _add_usage(self, usage: Any) -> None:
        # message_start reports input tokens, message_delta the output
        # total; both are summed as received.
        usage = field(usage, dict, "usage")
        if not usage:
            return
        self._input_tokens += field(usage.get("input_tokens"), int, "usage.input_tokens") or 0
        self._output_tokens += field(usage.get("output_tokens"), int, "usage.output_tokens") or 0

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
                if data is None:
                    continue
                try:
                    event = json.loads(data)
                except json.JSONDecodeError as e:
                    self._fail(f"error decoding event: {e}")
                    return
                if not isinstance(event, dict):
                    self._fail(f"unexpected event: {data[:100]}")
                    return

                event_type = event.get("type")

                if event_type == "ping":
                    continue

                if event_type == "error":
                    error = field(event.get("error"), dict, "error") or {}
                    self._fail(f"{error.get('type', 'unknown')}: {error.get('message', '')}")
                    return

                if event_type == "message_start":
                    message = field(event.get("message"), dict, "message") or {}
                    role = field(message.get("role"), str, "message.role")
                    if role:
                        try:
                            self._message.role = Role(role)
                        except ValueError:
                            self._fail(f"unknown role {role!r}")
                            return
                    self._add_usage(message.get("usage"))

                elif event_type == "content_block_start":
                    block = field(event.get("content_block"), dict, "content_block") or {}
                    index = field(event.get("index"), int, "index")
                    if block.get("type") == "tool_use":
                        if self._open_block is not None:
                            self._open_block = None
                            yield StreamStatus.TOOL_CALL_READY
                        calls.append(
                            ToolCall(
                                id=field(block.get("id"), str, "content_block.id") or "",
                                name=field(block.get("name"), str, "content_block.name") or "",
                            )
                        )
                        self._open_block = len(calls) - 1 if index is None else index
                        yield StreamStatus.TOOL_CALL_BEGIN
                    elif block.get("type") == "text":
                        text = field(block.get("text"), str, "content_block.text")
                        if text:
                            self._text = text
                            self._message.content.append_text(text)
                            yield StreamStatus.TEXT

                elif event_type == "content_block_delta":
                    delta = field(event.get("delta"), dict, "delta") or {}
                    delta_type = delta.get("type")
                    if delta_type == "text_delta":
                        self._text = field(delta.get("text"), str, "delta.text") or ""
                        if self._text:
                            self._message.content.append_text(self._text)
                            yield StreamStatus.TEXT
                    elif delta_type == "input_json_delta":
                        if self._open_block is None:
                            self._fail("tool input received with no open tool call")
                            return
                        fragment = (field(delta.get("partial_json"), str, "delta.partial_json") or "").encode()
                        if fragment:
                            calls[-1] = replace(calls[-1], arguments=calls[-1].arguments + fragment)
                            yield StreamStatus.TOOL_CALL_DATA

                elif event_type == "content_block_stop":
                    index = field(event.get("index"), int, "index")
                    if self._open_block is not None and (index is None or index == self._open_block):
                        self._open_block = None
                        yield StreamStatus.TOOL_CALL_READY

                elif event_type == "message_delta":
                    self._add_usage(event.get("usage"))
                    delta = field(event.get("delta"), dict, "delta") or {}
                    stop_reason = field(delta.get("stop_reason"), str, "delta.stop_reason")
                    if stop_reason:
                        logger.debug("Anthropic stop_reason=%s", stop_reason)
                        if stop_reason not in _NORMAL_STOP:
                            self._fail(f"unexpected stop reason: {stop_reason!r}")
                            return

                elif event_type == "message_stop":
                    break
        except StreamDecodeError as e:
            self._fail(str(e))
            return
        except httpx.HTTPError as e:
            self._fail(f"error reading stream: {e}")
            return
        finally:
            await response.aclose()

        if self._open_block is not None:
            self._open_block = None
            yield StreamStatus.TOOL_CALL_READY


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def content_blocks(content: Content) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for item in content:
        if isinstance(item, Text):
            # The API rejects blank text blocks
            blocks.append({"type": "text", "text": item.text if item.text.strip() else "(Empty)"})
        elif isinstance(item, ImageURL):
            blocks.append({"type": "image", "source": _image_source(item.image_url)})
        elif isinstance(item, JSON):
            blocks.append({"type": "text", "text": item.raw()})
        else:
            raise TypeError(f"unhandled content item type {type(item).__name__}")
    return blocks


def _image_source(url: str) -> dict[str, str]:
    if not url.startswith("data:"):
        return {"type": "url", "url": url}
    media_type, sep, data = url[len("data:"):].partition(";base64,")
    if not sep:
        raise ValueError(f"unsupported data URI format {url[:40]!r}")
    return {"type": "base64", "media_type": media_type, "data": data}


def _tool_input(arguments: bytes) -> dict[str, Any]:
    try:
        value = json.loads(arguments) if arguments else {}
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def message_to_wire(message: Message) -> dict[str, Any]:
    """Convert one history message to an API message."""
    if message.role == Role.TOOL:
        # Tool results are sent as user content
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": content_blocks(message.content),
                }
            ],
        }
    blocks = content_blocks(message.content)
    for call in message.tool_calls:
        blocks.append({
            "type": "tool_use",
            "id": call.id,
            "name": call.name,
            "input": _tool_input(call.arguments),
        })
    return {"role": str(message.role), "content": blocks}
