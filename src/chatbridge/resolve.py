"""Free-form ``provider/model`` target resolution."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Union

from chatbridge.errors import TargetResolutionError
from chatbridge.types import TargetResolution

TargetLike = Union[str, Mapping[str, Any], TargetResolution]

# Synonyms accepted in targets, mapped onto canonical provider ids.
PROVIDER_ALIASES: dict[str, str] = {
    "openai": "openai",
    "open-ai": "openai",
    "oai": "openai",
    "anthropic": "anthropic",
    "claude": "anthropic",
    "groq": "groq",
    "gemini": "gemini",
    "google": "gemini",
    "google-ai": "gemini",
    "openrouter": "openrouter",
    "open-router": "openrouter",
    "sambanova": "sambanova",
    "samba": "sambanova",
    "cerebras": "cerebras",
    "cerebras-ai": "cerebras",
    "cs": "cerebras",
    "v1": "v1",
    "openai-compatible": "v1",
    "oai-compat": "v1",
}

# Ordered; first match wins.
MODEL_PREFIX_HINTS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^(gpt-|o[134](\b|-|_))", re.IGNORECASE), "openai"),
    (re.compile(r"^claude-", re.IGNORECASE), "anthropic"),
    (re.compile(r"^gemini-", re.IGNORECASE), "gemini"),
    (re.compile(r"^(llama|meta-llama|mixtral|mistral)", re.IGNORECASE), "groq"),
]

_SEPARATORS = re.compile(r"[/:\s]+")

_HINT = "Accepts 'provider/model' (e.g. 'openai/gpt-4o-mini') or separate {provider, model}."


def resolve_provider_alias(name: str | None) -> str | None:
    if not name:
        return None
    return PROVIDER_ALIASES.get(name.strip().lower())


def infer_provider_from_model(model: str | None) -> str | None:
    if not model:
        return None
    model = model.strip()
    for pattern, provider in MODEL_PREFIX_HINTS:
        if pattern.match(model):
            return provider
    return None


def parse_target_string(target: str) -> tuple[str | None, str | None]:
    """Split a target string into ``(provider, model)``; either may be ``None``.

    >>> parse_target_string("groq/openai/gpt-oss-20b")
    ('groq', 'openai/gpt-oss-20b')
    """
    raw = target.strip()
    parts = [p for p in _SEPARATORS.split(raw) if p]
    if not parts:
        return None, None

    provider = resolve_provider_alias(parts[0])
    if provider:
        return provider, "/".join(parts[1:]) or None

    return infer_provider_from_model(raw), raw


def _resolve_fields(provider_field: Any, model_field: Any) -> tuple[str | None, str | None]:
    provider = resolve_provider_alias(provider_field) if isinstance(provider_field, str) else None
    model = model_field if isinstance(model_field, str) and model_field.strip() else None

    if isinstance(provider_field, str) and "/" in provider_field and not (provider and model):
        parsed_provider, parsed_model = parse_target_string(provider_field)
        provider = provider or parsed_provider
        model = model or parsed_model

    if model and "/" in model and provider is None:
        parsed_provider, parsed_model = parse_target_string(model)
        if parsed_provider is not None:
            provider = parsed_provider
            model = parsed_model or model

    if provider is None:
        provider = infer_provider_from_model(model)
    return provider, model


def resolve_target(target: TargetLike) -> TargetResolution:
    """Turn a free-form target into a :class:`TargetResolution`.

    Accepted shapes: ``"openai/gpt-4o-mini"``, ``"gpt-4o-mini"``,
    ``{"target": "groq openai/gpt-oss-20b"}`` and ``{"provider": ..., "model": ...}``.
    Resolving an already resolved pair returns it unchanged.
    """
    if isinstance(target, TargetResolution):
        target = {"provider": target.provider, "model": target.model}

    if isinstance(target, str):
        provider, model = parse_target_string(target)
    elif isinstance(target, Mapping) and isinstance(target.get("target"), str):
        provider, model = parse_target_string(target["target"])
    elif isinstance(target, Mapping):
        provider, model = _resolve_fields(target.get("provider"), target.get("model"))
    else:
        raise TargetResolutionError(f"Unsupported target type {type(target).__name__}. {_HINT}")

    if not provider or not model:
        raise TargetResolutionError(f"Could not resolve provider/model from {target!r}. {_HINT}")
    return TargetResolution(provider=provider, model=model)
