"""LLM module: vendor providers and their stream decoders.

Public API: the Provider / ProviderStream contracts, both vendor
implementations and the shared schema types.
"""

from parley.llm.anthropic import AnthropicProvider, AnthropicStream
from parley.llm.factory import create_provider
from parley.llm.openai import OpenAIProvider, OpenAIStream
from parley.llm.provider import Provider, ProviderStream
from parley.llm.schemas import Message, Role, StreamStatus, ToolCall

# Closed set of decoder variants; each satisfies ProviderStream on its own
StreamDecoder = OpenAIStream | AnthropicStream

__all__ = [
    "Provider",
    "ProviderStream",
    "StreamDecoder",
    "create_provider",
    # Vendors
    "AnthropicProvider",
    "AnthropicStream",
    "OpenAIProvider",
    "OpenAIStream",
    # Schemas
    "Message",
    "Role",
    "StreamStatus",
    "ToolCall",
]
