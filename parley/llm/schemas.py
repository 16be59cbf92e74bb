"""Conversation data model shared by providers, decoders and the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from parley.content import Content


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class StreamStatus(StrEnum):
    """What the most recent step of a stream decoder did."""

    TEXT = "text"
    TOOL_CALL_BEGIN = "tool_call_begin"
    TOOL_CALL_DATA = "tool_call_data"
    TOOL_CALL_READY = "tool_call_ready"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` holds the raw JSON bytes as streamed; they are not
    validated here.
    """

    id: str
    name: str
    arguments: bytes = b""

    @property
    def correlation_id(self) -> str:
        """Key tying a tool result to this call; the name stands in for a missing id."""
        return self.id or self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments.decode("utf-8", errors="replace"),
        }


@dataclass
class Message:
    """One turn in a conversation.

    Messages appended to a conversation's history are never modified
    afterwards; decoders assemble their own private message.
    """

    role: Role
    content: Content = field(default_factory=Content)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""  # tool-role messages only

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": str(self.role), "content": self.content.dump()}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data
