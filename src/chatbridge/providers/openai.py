"""OpenAI-style (Chat Completions) provider implementation."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from typing import Any

from pydantic import ValidationError

from chatbridge.errors import ProtocolParseError
from chatbridge.providers.base import BaseProvider, merge_headers
from chatbridge.sse import parse_sse
from chatbridge.transport import HttpTransport, join_url
from chatbridge.types import (
    ChatRequest,
    ChatResponse,
    ChatStreamChunk,
    Choice,
    Delta,
    FunctionCallDelta,
    Message,
    ToolCallDelta,
    Usage,
)

_CHAT_PATH = "/chat/completions"
_MODELS_PATH = "/models"
_DONE = "[DONE]"

# Models that reject ``max_tokens`` and expect ``max_completion_tokens``.
DEFAULT_COMPLETION_TOKENS_PATTERN = re.compile(r"(^|/)(gpt-5|o[134](?=$|[-_.]))", re.IGNORECASE)

_UNSET: Any = object()


class OpenAIProvider(BaseProvider):
    """Async adapter for the OpenAI Chat Completions wire protocol.

    Several vendors reuse this wire shape; they subclass it and only change
    ``id``, ``name`` and ``default_base_url``.
    """

    id = "openai"
    name = "OpenAI"
    default_base_url: str | None = "https://api.openai.com/v1"
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        *,
        transport: HttpTransport | None = None,
        timeout_s: float = 60.0,
        completion_tokens_pattern: re.Pattern[str] | str | None = _UNSET,
    ) -> None:
        super().__init__(transport=transport, timeout_s=timeout_s)
        if completion_tokens_pattern is _UNSET:
            completion_tokens_pattern = DEFAULT_COMPLETION_TOKENS_PATTERN
        elif isinstance(completion_tokens_pattern, str):
            completion_tokens_pattern = re.compile(completion_tokens_pattern, re.IGNORECASE)
        self.completion_tokens_pattern: re.Pattern[str] | None = completion_tokens_pattern

    def uses_completion_tokens(self, model: str) -> bool:
        """Whether ``model`` takes ``max_completion_tokens`` instead of ``max_tokens``."""
        pattern = self.completion_tokens_pattern
        return pattern is not None and pattern.search(model) is not None

    async def chat(
        self,
        req: ChatRequest,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> ChatResponse:
        """Call Chat Completions and normalize the result."""
        url = join_url(self._base_url(base_url), _CHAT_PATH)
        response = await self._transport.perform(
            url,
            headers=self._headers(req, api_key, accept="application/json"),
            json=self._build_payload(req, stream=False),
            cancel=req.cancel,
            provider=self.id,
        )
        data = self._json_or_error(response)
        return self._to_chat_response(data)

    def stream_chat(
        self,
        req: ChatRequest,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> AsyncIterator[ChatStreamChunk]:
        """Return an async iterator of canonical chunks for one streamed turn."""

        async def _gen() -> AsyncIterator[ChatStreamChunk]:
            url = join_url(self._base_url(base_url), _CHAT_PATH)
            async with self._transport.open_stream(
                url,
                headers=self._headers(req, api_key, accept="text/event-stream"),
                json=self._build_payload(req, stream=True),
                cancel=req.cancel,
                provider=self.id,
            ) as response:
                await self._raise_for_stream_status(response)

                # vendors send the call id only on the first fragment of each call
                ids_by_index: dict[int, str] = {}
                records = parse_sse(self._transport.iter_bytes(response, req.cancel, self.id))
                async with aclosing(records):
                    async for record in records:
                        if record is None or not record.data:
                            continue
                        if record.data == _DONE:
                            return
                        event = self._decode_frame(record.data)
                        if event is None:
                            continue
                        chunk = self._to_chunk(event, ids_by_index)
                        if chunk is not None:
                            yield chunk

        return _gen()

    async def list_models(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> list[str]:
        """List model ids from the ``/models`` endpoint."""
        url = join_url(self._base_url(base_url), _MODELS_PATH)
        response = await self._transport.perform(
            url,
            method="GET",
            headers=merge_headers(
                {"Authorization": f"Bearer {api_key or ''}", "Accept": "application/json"},
                headers,
            ),
            provider=self.id,
        )
        data = self._json_or_error(response)
        return [m["id"] for m in data.get("data") or [] if isinstance(m, dict) and "id" in m]

    def _headers(self, req: ChatRequest, api_key: str | None, *, accept: str) -> dict[str, str]:
        return merge_headers(
            {
                "Authorization": f"Bearer {api_key or ''}",
                "Content-Type": "application/json",
                "Accept": accept,
            },
            req.extra_headers,
        )

    def _build_payload(self, req: ChatRequest, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": req.model,
            "messages": [m.model_dump(exclude_none=True) for m in req.messages],
            "stream": stream,
        }

        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.max_tokens is not None:
            key = "max_completion_tokens" if self.uses_completion_tokens(req.model) else "max_tokens"
            payload[key] = req.max_tokens

        if req.tools:
            payload["tools"] = [t.model_dump(exclude_none=True) for t in req.tools]
        if req.tool_choice is not None:
            payload["tool_choice"] = (
                req.tool_choice if isinstance(req.tool_choice, str) else req.tool_choice.model_dump()
            )
        if req.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _to_chat_response(self, data: dict[str, Any]) -> ChatResponse:
        try:
            choices = [
                Choice(
                    index=c.get("index", i),
                    message=Message.model_validate(c.get("message") or {"role": "assistant", "content": ""}),
                    finish_reason=c.get("finish_reason"),
                )
                for i, c in enumerate(data.get("choices") or [])
            ]
            usage = Usage.model_validate(data["usage"]) if data.get("usage") else None
        except (AttributeError, ValidationError) as exc:
            raise ProtocolParseError(self.id, f"unexpected response shape: {exc}") from exc

        return ChatResponse(
            id=data.get("id") or "unknown",
            created=data.get("created") or int(time.time()),
            model=data.get("model") or "unknown",
            choices=choices,
            usage=usage,
            provider=self.id,
            raw=data,
        )

    def _to_chunk(self, event: dict[str, Any], ids_by_index: dict[int, str]) -> ChatStreamChunk | None:
        choices = event.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        choice = choices[0]
        delta = choice.get("delta") or {}

        tool_calls = None
        if isinstance(delta.get("tool_calls"), list):
            tool_calls = [
                self._to_tool_call_delta(t, ids_by_index) for t in delta["tool_calls"] if isinstance(t, dict)
            ]

        try:
            return ChatStreamChunk(
                id=event.get("id"),
                created=event.get("created"),
                model=event.get("model"),
                delta=Delta(role=delta.get("role"), content=delta.get("content"), tool_calls=tool_calls),
                finish_reason=choice.get("finish_reason"),
                raw=event,
            )
        except ValidationError as exc:
            self._logger.debug("%s: skipping malformed stream frame: %s", self.id, exc)
            return None

    @staticmethod
    def _to_tool_call_delta(fragment: dict[str, Any], ids_by_index: dict[int, str]) -> ToolCallDelta:
        index = fragment.get("index") or 0
        call_id = fragment.get("id") or ids_by_index.get(index) or str(index)
        ids_by_index.setdefault(index, call_id)
        function = fragment.get("function") or {}
        return ToolCallDelta(
            id=call_id,
            function=FunctionCallDelta(
                name=function.get("name") or None,
                arguments=function.get("arguments") or "",
            ),
        )
