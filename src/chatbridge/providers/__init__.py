"""Provider definitions for chatbridge."""

from .anthropic import AnthropicProvider
from .base import BaseProvider, ProviderCapabilities
from .compat import (
    CerebrasProvider,
    GeminiProvider,
    GroqProvider,
    OpenRouterProvider,
    SambaNovaProvider,
    V1Provider,
)
from .openai import OpenAIProvider

__all__ = [
    "BaseProvider",
    "ProviderCapabilities",
    "OpenAIProvider",
    "AnthropicProvider",
    "GroqProvider",
    "GeminiProvider",
    "OpenRouterProvider",
    "SambaNovaProvider",
    "CerebrasProvider",
    "V1Provider",
]
