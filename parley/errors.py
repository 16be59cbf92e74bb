"""Parley exception hierarchy.

Every failure of a chat call reaches the caller as an ErrorUpdate wrapping
one of these. Tool failures are not in this list: they are reported back
to the model as error tool results.
"""


class ParleyError(Exception):
    """Base exception for all parley errors."""


class ProviderError(ParleyError):
    """The provider failed before the vendor started streaming.

    Covers payload encoding, transport failures and non-200 responses.
    """

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class StreamDecodeError(ParleyError):
    """A streamed record could not be decoded, or the vendor stopped abnormally."""


class ChatCancelled(ParleyError):
    """The chat's cancellation signal fired."""


class UnknownToolError(ParleyError):
    """The model asked for a tool the registry does not have."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"tool {name!r} not found")
