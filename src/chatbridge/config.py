"""Client configuration: credentials, endpoints and hooks."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatbridge.types import Usage

UsageCallback = Callable[[Optional[Usage], Mapping[str, str]], Any]

# Path appended to the proxy URL per provider; unlisted providers use the proxy as-is.
PROXY_PATHS: dict[str, str] = {
    "openai": "/openai/v1",
    "anthropic": "/anthropic",
}


class ProviderKeys(BaseSettings):
    """API keys loaded from the environment (``OPENAI_API_KEY`` and friends)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    groq_api_key: str | None = None
    gemini_api_key: str | None = None
    openrouter_api_key: str | None = None
    sambanova_api_key: str | None = None
    cerebras_api_key: str | None = None
    v1_api_key: str | None = None

    def for_provider(self, provider: str) -> str | None:
        return getattr(self, f"{provider}_api_key", None) or None


class ClientConfig(BaseModel):
    """Per-client settings. Explicit values win over the environment."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    default_provider: str | None = None
    default_model: str | None = None
    api_keys: dict[str, str] = Field(default_factory=dict)
    # read once, when the config is built
    env_keys: ProviderKeys = Field(default_factory=ProviderKeys)
    base_urls: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, dict[str, str]] = Field(default_factory=dict)
    proxy: str | None = None
    # called once per completed blocking call with (usage, {"provider", "model"})
    on_usage: UsageCallback | None = None
    timeout_s: float = 60.0

    def api_key_for(self, provider: str) -> str | None:
        if provider in self.api_keys:
            return self.api_keys[provider]
        return self.env_keys.for_provider(provider)

    def base_url_for(self, provider: str) -> str | None:
        """Configured base URL, else the proxy mapping, else ``None`` (adapter default)."""
        if self.base_urls.get(provider):
            return self.base_urls[provider]
        if self.proxy:
            return self.proxy.rstrip("/") + PROXY_PATHS.get(provider, "")
        return None

    def headers_for(self, provider: str) -> dict[str, str]:
        return dict(self.headers.get(provider) or {})
