"""Settings via pydantic-settings with PARLEY_ env prefix.

Vendor credentials use validation_alias to read the same unprefixed env
vars (OPENAI_API_KEY, ANTHROPIC_API_KEY) that the vendors' own tooling
reads, so one .env file serves both.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env")

    provider: Literal["openai", "anthropic"] = "anthropic"
    model: str = "claude-sonnet-4-5"

    # OpenAI chat completions
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openai_endpoint: str = "https://api.openai.com/v1/chat/completions"
    max_completion_tokens: int = 0  # 0 = leave out of the payload

    # Anthropic Messages API
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_endpoint: str = "https://api.anthropic.com/v1/messages"
    max_tokens: int = 4096

    # httpx client
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Step snapshots as YAML; empty disables
    debug_file: str = ""

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not self.model:
            raise ValueError("model must not be empty")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        return self
