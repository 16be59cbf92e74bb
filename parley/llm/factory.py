"""Provider factory.

PARLEY_PROVIDER selects the vendor framing:
- openai: OpenAI chat completions (or any compatible endpoint via PARLEY_OPENAI_ENDPOINT)
- anthropic (default): Anthropic Messages API
"""

from __future__ import annotations

import httpx

from parley.config import Settings
from parley.llm.anthropic import AnthropicProvider
from parley.llm.openai import OpenAIProvider


def create_provider(
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> OpenAIProvider | AnthropicProvider:
    """Build the provider configured in ``settings``.

    Args:
        settings: Settings to read; loaded from the environment when omitted
        client: Optional shared httpx client; the provider builds its own otherwise

    Raises:
        ValueError: If the provider name is not supported
    """
    settings = settings or Settings()
    if settings.provider == "openai":
        return OpenAIProvider.from_settings(settings, client)
    if settings.provider == "anthropic":
        return AnthropicProvider.from_settings(settings, client)
    raise ValueError(f"Unknown provider {settings.provider!r}")
