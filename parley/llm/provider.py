"""Provider and stream decoder contracts.

A Provider turns (system prompt, history, tools) into one streaming vendor
request and returns a decoder bound to the response. Failures before the
vendor starts streaming come back as a decoder whose ``err`` is already
set; generate() itself does not raise for them.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Sequence
from typing import Any, Protocol

import httpx

from parley.content import Content
from parley.errors import ProviderError, StreamDecodeError
from parley.llm.schemas import Message, StreamStatus, ToolCall
from parley.tools import Toolbox

logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"


class ProviderStream(Protocol):
    """A single-pass decoder over one vendor response."""

    @property
    def err(self) -> Exception | None:
        """Sticky error; once set, iteration has stopped."""
        ...

    @property
    def message(self) -> Message:
        """The assistant message assembled so far (final once iteration ends)."""
        ...

    @property
    def text(self) -> str:
        """Text delta of the most recent TEXT status."""
        ...

    @property
    def tool_call(self) -> ToolCall:
        """The tool call the most recent tool status refers to."""
        ...

    @property
    def usage(self) -> tuple[int, int]:
        """(input_tokens, output_tokens) reported so far."""
        ...

    @property
    def cost_usd(self) -> float: ...

    def statuses(self) -> AsyncGenerator[StreamStatus, None]:
        """Decode the response, yielding one status per unit of progress."""
        ...


class Provider(Protocol):
    company: str
    model: str

    async def generate(
        self,
        system_prompt: Content | None,
        messages: Sequence[Message],
        toolbox: Toolbox | None,
    ) -> ProviderStream: ...


def sse_data(line: str) -> str | None:
    """Payload of an SSE ``data:`` line, or None for any other line."""
    if not line.startswith(_DATA_PREFIX):
        return None
    data = line[len(_DATA_PREFIX):]
    return data[1:] if data.startswith(" ") else data


def field(value: Any, kind: type, what: str) -> Any:
    """Check the JSON type of one field of a decoded record; null passes as None.

    Raises StreamDecodeError when the record has the wrong shape.
    """
    if value is None:
        return None
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise StreamDecodeError(f"malformed {what}: expected {kind.__name__}, got {type(value).__name__}")
    return value


async def send_streaming(client: httpx.AsyncClient, request: httpx.Request, provider: str) -> httpx.Response:
    """Send ``request`` and return the still-open response.

    Raises ProviderError for transport failures and non-200 statuses; the
    response is closed in that case.
    """
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        raise ProviderError(f"error making request: {e}", provider=provider) from e

    if response.status_code != httpx.codes.OK:
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = ""
        finally:
            await response.aclose()
        logger.warning("%s returned HTTP %d: %s", provider, response.status_code, body[:500])
        message = f"{response.status_code} {response.reason_phrase}"
        if body:
            message = f"{message}: {body[:500]}"
        raise ProviderError(message, provider=provider, status_code=response.status_code)

    return response


def build_http_client(connect_timeout: float = 10.0, read_timeout: float = 120.0) -> httpx.AsyncClient:
    """httpx client shared by the vendor providers."""
    timeout = httpx.Timeout(
        connect=connect_timeout,
        read=read_timeout,
        write=10.0,
        pool=10.0,
    )
    limits = httpx.Limits(
        max_connections=10,
        max_keepalive_connections=5,
    )
    return httpx.AsyncClient(timeout=timeout, limits=limits)
