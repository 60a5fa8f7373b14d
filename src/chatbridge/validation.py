"""Boundary validation for chat requests."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from chatbridge.errors import RequestValidationError, UnknownProviderError
from chatbridge.types import KNOWN_PROVIDERS, ChatRequest, Message


def ensure_known_provider(provider_id: str) -> None:
    """Raise :class:`UnknownProviderError` unless ``provider_id`` is a known id."""
    if provider_id not in KNOWN_PROVIDERS:
        raise UnknownProviderError(provider_id, "is not a known provider")


def _format_errors(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<request>"
        messages.append(f"{loc}: {err['msg']}")
    return messages


def _check_tool_messages(messages: list[Message]) -> list[str]:
    problems = []
    seen_ids: set[str] = set()
    for i, m in enumerate(messages):
        if m.role == "assistant" and m.tool_calls:
            seen_ids.update(tc.id for tc in m.tool_calls)
        elif m.role == "tool" and m.tool_call_id not in seen_ids:
            problems.append(
                f"messages.{i}.tool_call_id: '{m.tool_call_id}' does not match a prior assistant tool call"
            )
    return problems


def validate_chat_request(raw: ChatRequest | Mapping[str, Any]) -> ChatRequest:
    """Validate ``raw`` into a :class:`ChatRequest`.

    All schema problems are reported together in one :class:`RequestValidationError`.
    """
    data = dict(raw) if isinstance(raw, (ChatRequest, Mapping)) else raw
    try:
        req = ChatRequest.model_validate(data)
    except ValidationError as exc:
        raise RequestValidationError(_format_errors(exc)) from exc

    problems = _check_tool_messages(req.messages)
    if problems:
        raise RequestValidationError(problems)

    ensure_known_provider(req.provider)
    return req
