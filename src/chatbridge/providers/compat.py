"""Vendors that speak the OpenAI Chat Completions wire protocol."""

from __future__ import annotations

from chatbridge.providers.openai import OpenAIProvider


class GroqProvider(OpenAIProvider):
    id = "groq"
    name = "Groq"
    default_base_url = "https://api.groq.com/openai/v1"


class GeminiProvider(OpenAIProvider):
    """Google Generative Language, OpenAI-compatible endpoint."""

    id = "gemini"
    name = "Gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta/openai"


class OpenRouterProvider(OpenAIProvider):
    id = "openrouter"
    name = "OpenRouter"
    default_base_url = "https://openrouter.ai/api/v1"


class SambaNovaProvider(OpenAIProvider):
    id = "sambanova"
    name = "SambaNova"
    default_base_url = "https://api.sambanova.ai/v1"


class CerebrasProvider(OpenAIProvider):
    id = "cerebras"
    name = "Cerebras"
    default_base_url = "https://api.cerebras.ai/v1"


class V1Provider(OpenAIProvider):
    """Any self-hosted OpenAI-compatible ``/v1`` server; the base URL must be configured."""

    id = "v1"
    name = "OpenAI-compatible v1"
    default_base_url = None
