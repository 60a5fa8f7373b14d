"""Provider-agnostic base interfaces and helpers."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from chatbridge.errors import ProtocolParseError, TransportError, UnsupportedFeatureError
from chatbridge.transport import HttpTransport
from chatbridge.types import ChatRequest, ChatResponse, ChatStreamChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Describes which optional adapter operations are implemented."""

    streaming: bool
    list_models: bool


class BaseProvider(ABC):
    """Abstract base class for provider adapters.

    Adapters translate a canonical :class:`ChatRequest` into one vendor call and
    vendor output back into canonical responses and chunks. They must not
    mutate the request.
    """

    id: str
    name: str
    default_base_url: str | None = None

    def __init__(
        self,
        *,
        transport: HttpTransport | None = None,
        timeout_s: float = 60.0,
    ) -> None:
        self._transport = transport or HttpTransport(timeout_s=timeout_s, provider=self.id)

    async def aclose(self) -> None:
        """Close the underlying HTTP transport."""
        await self._transport.aclose()

    @property
    def transport(self) -> HttpTransport:
        return self._transport

    @property
    def capabilities(self) -> ProviderCapabilities:
        cls = type(self)
        return ProviderCapabilities(
            streaming=cls.stream_chat is not BaseProvider.stream_chat,
            list_models=cls.list_models is not BaseProvider.list_models,
        )

    @abstractmethod
    async def chat(
        self,
        req: ChatRequest,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> ChatResponse:
        """Execute one blocking chat completion."""
        raise NotImplementedError

    def stream_chat(
        self,
        req: ChatRequest,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> AsyncIterator[ChatStreamChunk]:
        """Return an async iterator of canonical stream chunks."""
        raise UnsupportedFeatureError("streaming", self.id)

    async def list_models(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> list[str]:
        """Return the model ids the endpoint serves."""
        raise UnsupportedFeatureError("list_models", self.id)

    def _base_url(self, base_url: str | None) -> str:
        base = base_url or self.default_base_url
        if not base:
            raise TransportError(self.id, "Base URL is not configured")
        return base

    def _error(self, response: httpx.Response, body: str) -> TransportError:
        return TransportError(
            self.id,
            f"{self.name} error: {body or response.reason_phrase}",
            status_code=response.status_code,
            body=body,
        )

    def _json_or_error(self, response: httpx.Response) -> dict[str, Any]:
        if not response.is_success:
            raise self._error(response, response.text)
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolParseError(self.id, f"response body is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolParseError(self.id, f"expected a JSON object, got {type(data).__name__}")
        return data

    async def _raise_for_stream_status(self, response: httpx.Response) -> None:
        if not response.is_success:
            body = (await response.aread()).decode(errors="replace")
            raise self._error(response, body)

    def _decode_frame(self, data: str) -> dict[str, Any] | None:
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("%s: skipping non-JSON stream frame: %s", self.id, data)
            return None
        if not isinstance(event, dict):
            logger.debug("%s: skipping non-object stream frame: %s", self.id, data)
            return None
        return event


def merge_headers(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge header mappings left to right; later layers override earlier ones."""
    merged: dict[str, str] = {}
    for layer in layers:
        if layer:
            merged.update(layer)
    return merged
