"""Anthropic Messages provider implementation."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any
from urllib.parse import urlparse

from chatbridge.errors import ProtocolParseError
from chatbridge.providers.base import BaseProvider, merge_headers
from chatbridge.sse import parse_sse
from chatbridge.transport import join_url
from chatbridge.types import (
    ChatRequest,
    ChatResponse,
    ChatStreamChunk,
    Choice,
    Delta,
    FunctionCall,
    ImagePart,
    Message,
    ToolCall,
    ToolChoice,
    ToolDef,
    Usage,
)

_MESSAGES_PATH = "/v1/messages"
_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 1024
_GENERIC_IMAGE_TYPE = "image/*"

_MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
}

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def guess_media_type(url: str) -> str:
    """Best-effort image media type from the URL's file extension."""
    path = urlparse(url).path
    _, dot, ext = path.rpartition(".")
    if not dot:
        return _GENERIC_IMAGE_TYPE
    return _MEDIA_TYPES.get(ext.lower(), _GENERIC_IMAGE_TYPE)


class AnthropicProvider(BaseProvider):
    """Async adapter for the Anthropic Messages API."""

    id = "anthropic"
    name = "Anthropic"
    default_base_url = "https://api.anthropic.com"
    _logger = logging.getLogger(__name__)

    async def chat(
        self,
        req: ChatRequest,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> ChatResponse:
        url = join_url(self._base_url(base_url), _MESSAGES_PATH)
        response = await self._transport.perform(
            url,
            headers=self._headers(req, api_key, accept="application/json"),
            json=self._build_payload(req, stream=False),
            cancel=req.cancel,
            provider=self.id,
        )
        data = self._json_or_error(response)
        return self._to_chat_response(data, req.model)

    def stream_chat(
        self,
        req: ChatRequest,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> AsyncIterator[ChatStreamChunk]:

        async def _gen() -> AsyncIterator[ChatStreamChunk]:
            url = join_url(self._base_url(base_url), _MESSAGES_PATH)
            async with self._transport.open_stream(
                url,
                headers=self._headers(req, api_key, accept="text/event-stream"),
                json=self._build_payload(req, stream=True),
                cancel=req.cancel,
                provider=self.id,
            ) as response:
                await self._raise_for_stream_status(response)

                records = parse_sse(self._transport.iter_bytes(response, req.cancel, self.id))
                async with aclosing(records):
                    async for record in records:
                        if record is None or not record.data:
                            continue
                        event = self._decode_frame(record.data)
                        if event is None:
                            continue
                        kind = event.get("type")
                        if kind == "message_stop":
                            return
                        delta = event.get("delta")
                        if (
                            kind == "content_block_delta"
                            and isinstance(delta, dict)
                            and delta.get("type") == "text_delta"
                        ):
                            yield ChatStreamChunk(
                                delta=Delta(role="assistant", content=delta.get("text") or ""),
                                raw=event,
                            )

        return _gen()

    def _headers(self, req: ChatRequest, api_key: str | None, *, accept: str) -> dict[str, str]:
        return merge_headers(
            {
                "x-api-key": api_key or "",
                "anthropic-version": _API_VERSION,
                "content-type": "application/json",
                "accept": accept,
            },
            req.extra_headers,
        )

    def _build_payload(self, req: ChatRequest, *, stream: bool) -> dict[str, Any]:
        system_text, messages = self._split_system(req.messages)

        payload: dict[str, Any] = {
            "model": req.model,
            # the API rejects requests without max_tokens
            "max_tokens": req.max_tokens if req.max_tokens is not None else _DEFAULT_MAX_TOKENS,
            "messages": self._serialize_messages(messages),
        }
        if system_text:
            payload["system"] = system_text
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.tools:
            payload["tools"] = self._serialize_tools(req.tools)
        if req.tool_choice is not None and req.tools:
            payload["tool_choice"] = self._serialize_tool_choice(req.tool_choice)
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _split_system(messages: list[Message]) -> tuple[str, list[Message]]:
        system_parts: list[str] = []
        rest: list[Message] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.text())
            else:
                rest.append(m)
        return ("\n".join(system_parts), rest)

    def _serialize_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        # consecutive tool results share one user turn
        tool_results: list[dict[str, Any]] | None = None
        for m in messages:
            if m.role == "tool":
                if tool_results is None:
                    tool_results = []
                    out.append({"role": "user", "content": tool_results})
                tool_results.append({"type": "tool_result", "tool_use_id": m.tool_call_id, "content": m.text()})
                continue

            tool_results = None
            blocks = self._content_blocks(m)
            if m.role == "assistant" and m.tool_calls:
                blocks.extend(self._tool_use_block(tc) for tc in m.tool_calls)
            out.append({"role": m.role, "content": blocks})

        return out

    @staticmethod
    def _content_blocks(message: Message) -> list[dict[str, Any]]:
        if isinstance(message.content, str):
            return [{"type": "text", "text": message.content}] if message.content else []

        blocks: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ImagePart):
                blocks.append({"type": "image", "source": _image_source(part.image_url.url)})
            else:
                blocks.append({"type": "text", "text": part.text})
        return blocks

    @staticmethod
    def _tool_use_block(call: ToolCall) -> dict[str, Any]:
        try:
            arguments = json.loads(call.function.arguments) if call.function.arguments else {}
        except json.JSONDecodeError:
            arguments = {}
        return {"type": "tool_use", "id": call.id, "name": call.function.name, "input": arguments}

    @staticmethod
    def _serialize_tools(tools: list[ToolDef]) -> list[dict[str, Any]]:
        return [
            {
                "name": t.function.name,
                "description": t.function.description or "",
                "input_schema": t.function.parameters or {"type": "object", "properties": {}},
            }
            for t in tools
        ]

    @staticmethod
    def _serialize_tool_choice(choice: ToolChoice) -> dict[str, Any]:
        if choice == "required":
            return {"type": "any"}
        if choice == "none":
            return {"type": "none"}
        if choice == "auto":
            return {"type": "auto"}
        return {"type": "tool", "name": choice.function.name}

    def _to_chat_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        blocks = data.get("content") or []
        if not isinstance(blocks, list):
            raise ProtocolParseError(self.id, "expected 'content' to be a list of blocks")

        texts: list[str] = []
        tool_calls: list[ToolCall] = []
        for b in blocks:
            if not isinstance(b, dict):
                continue
            if b.get("type") == "text":
                texts.append(b.get("text") or "")
            elif b.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=b.get("id") or f"toolu_{len(tool_calls)}",
                        function=FunctionCall(
                            name=b.get("name") or "",
                            arguments=json.dumps(b.get("input") or {}),
                        ),
                    )
                )

        message = Message(role="assistant", content="".join(texts), tool_calls=tool_calls or None)
        stop_reason = data.get("stop_reason")
        return ChatResponse(
            id=data.get("id") or "unknown",
            created=int(time.time()),
            model=data.get("model") or model,
            choices=[
                Choice(index=0, message=message, finish_reason=_STOP_REASONS.get(stop_reason, stop_reason)),
            ],
            usage=self._to_usage(data.get("usage")),
            provider=self.id,
            raw=data,
        )

    @staticmethod
    def _to_usage(usage: Any) -> Usage | None:
        if not isinstance(usage, dict):
            return None
        prompt = usage.get("input_tokens")
        completion = usage.get("output_tokens")
        total = usage.get("total_tokens")
        if total is None and (prompt is not None or completion is not None):
            total = (prompt or 0) + (completion or 0)
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _image_source(url: str) -> dict[str, Any]:
    if url.startswith("data:"):
        header, _, payload = url.partition(",")
        media_type = header[len("data:") :].split(";")[0] or _GENERIC_IMAGE_TYPE
        return {"type": "base64", "media_type": media_type, "data": payload}
    return {"type": "url", "url": url, "media_type": guess_media_type(url)}
