"""Test fixtures. No network: providers are exercised through httpx mock transports."""

import pytest

from parley.config import Settings

_ENV_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "PARLEY_PROVIDER",
    "PARLEY_MODEL",
    "PARLEY_MAX_TOKENS",
    "PARLEY_DEBUG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's environment out of Settings()."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> Settings:
    """Settings built from defaults only (no .env file)."""
    return Settings(_env_file=None)
