"""Message content: an ordered list of text, image and raw JSON items.

Items serialize with a ``type`` discriminator::

    [{"type": "text", "text": "hello"},
     {"type": "imageURL", "image_url": "https://example.com/image.jpg"},
     {"type": "json", "data": {"foo": "bar"}}]
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class Text(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageURL(BaseModel):
    """An image by URL. ``data:`` URIs carry the image inline."""

    type: Literal["imageURL"] = "imageURL"
    image_url: str


class JSON(BaseModel):
    """Raw JSON, e.g. a serialized tool result."""

    type: Literal["json"] = "json"
    data: Any = None

    def raw(self) -> str:
        return json.dumps(self.data)


ContentItem = Annotated[Union[Text, ImageURL, JSON], Field(discriminator="type")]

_ITEMS = TypeAdapter(list[ContentItem])


class Content(list):
    """Append-only list of content items."""

    @classmethod
    def from_text(cls, text: str) -> Content:
        return cls([Text(text=text)])

    @classmethod
    def from_text_and_image(cls, text: str, image_url: str) -> Content:
        return cls([Text(text=text), ImageURL(image_url=image_url)])

    @classmethod
    def from_raw_json(cls, raw: str | bytes) -> Content:
        return cls([JSON(data=json.loads(raw))])

    @classmethod
    def load(cls, data: Any) -> Content:
        """Validate a JSON-compatible list (as produced by dump()).

        Raises pydantic.ValidationError on unknown item types.
        """
        return cls(_ITEMS.validate_python(data))

    def append_text(self, text: str) -> None:
        """Append a text fragment, extending a trailing text item if there is one."""
        if self and isinstance(self[-1], Text):
            self[-1].text += text
        else:
            self.append(Text(text=text))

    def add_image(self, url: str) -> None:
        self.append(ImageURL(image_url=url))

    def to_text(self) -> str:
        return "".join(item.text for item in self if isinstance(item, Text))

    def dump(self) -> list[dict[str, Any]]:
        return _ITEMS.dump_python(list(self), mode="json")
