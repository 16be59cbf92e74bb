"""Per-step diagnostic snapshots.

The engine hands one StepSnapshot to its sink after every step. The
default sink drops it; YamlFileSink keeps the latest step on disk.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from parley.content import Content
from parley.llm.schemas import Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepSnapshot:
    received_message: Message
    tool_results: list[Message] = field(default_factory=list)
    sent_messages: list[Message] = field(default_factory=list)
    system_prompt: Content | None = None
    available_tools: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        # Numbered keys keep the dump in this order
        return {
            "1_receivedMessage": self.received_message.to_dict(),
            "2_toolResults": [m.to_dict() for m in self.tool_results],
            "3_sentMessages": [m.to_dict() for m in self.sent_messages],
            "4_systemPrompt": self.system_prompt.dump() if self.system_prompt is not None else None,
            "5_availableTools": self.available_tools,
        }


DebugSink = Callable[[StepSnapshot], None]


def null_sink(snapshot: StepSnapshot) -> None:
    """Discard the snapshot."""


class YamlFileSink:
    """Overwrite ``path`` with a YAML dump of each step."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def __call__(self, snapshot: StepSnapshot) -> None:
        text = yaml.safe_dump(
            snapshot.to_dict(),
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
        try:
            self.path.write_text(text, encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write debug snapshot to %s: %s", self.path, e)
