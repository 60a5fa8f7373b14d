"""Async client orchestrating provider interactions."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from typing import Any, Union

from chatbridge.config import ClientConfig
from chatbridge.errors import (
    ChatBridgeError,
    ProtocolParseError,
    ToolLoopExceededError,
    TransportError,
    UnknownProviderError,
    UnsupportedFeatureError,
)
from chatbridge.providers import (
    AnthropicProvider,
    CerebrasProvider,
    GeminiProvider,
    GroqProvider,
    OpenAIProvider,
    OpenRouterProvider,
    SambaNovaProvider,
    V1Provider,
)
from chatbridge.providers.base import BaseProvider, ProviderCapabilities
from chatbridge.registry import ProviderRegistry
from chatbridge.resolve import TargetLike, resolve_provider_alias, resolve_target
from chatbridge.tools import ToolCallAccumulator, ToolHandlers, next_tool_choice, run_tool_calls
from chatbridge.transport import HttpTransport, join_url
from chatbridge.types import ChatRequest, ChatResponse, ChatStreamChunk, Message, ModelCheck, TargetResolution
from chatbridge.validation import validate_chat_request

logger = logging.getLogger(__name__)

RequestLike = Union[ChatRequest, Mapping[str, Any], str, TargetResolution]

DEFAULT_MAX_TOOL_CALLS = 10

_BUILTIN_PROVIDERS: tuple[type[BaseProvider], ...] = (
    OpenAIProvider,
    AnthropicProvider,
    GroqProvider,
    GeminiProvider,
    OpenRouterProvider,
    SambaNovaProvider,
    CerebrasProvider,
    V1Provider,
)


def describe_http_failure(status: int | None, provider: str, detail: str = "") -> str:
    """Human readable diagnostic for a failed ``/models`` lookup."""
    if status == 401:
        text = f"Unauthorized (401): the API key for '{provider}' was rejected"
    elif status == 403:
        text = f"Forbidden (403): the API key for '{provider}' may not list models"
    elif status == 404:
        text = f"Not found (404): '{provider}' does not expose a /models endpoint at this base URL"
    elif status is not None and status >= 500:
        text = f"Server error ({status}) from '{provider}'"
    elif status is not None:
        text = f"HTTP {status} from '{provider}'"
    else:
        text = f"Request to '{provider}' failed"
    return f"{text}: {detail}" if detail else text


class LLMClient:
    """High-level coordinator for chatting with registered providers.

    Resolves targets, validates requests, dispatches to the registry and runs
    the automatic tool-calling loops.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.registry = registry or ProviderRegistry()

    @classmethod
    def create_default(
        cls,
        config: ClientConfig | None = None,
        *,
        transport: HttpTransport | None = None,
    ) -> LLMClient:
        """Client with every built-in provider registered."""
        client = cls(config)
        for provider_cls in _BUILTIN_PROVIDERS:
            client.use(provider_cls(transport=transport, timeout_s=client.config.timeout_s))
        return client

    def use(self, provider: BaseProvider) -> LLMClient:
        self.registry.register(provider)
        return self

    async def aclose(self) -> None:
        """Close every registered provider's transport."""
        closed: set[int] = set()
        for provider in self.registry.values():
            transport = provider.transport
            if id(transport) not in closed:
                closed.add(id(transport))
                await transport.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def get_provider(self, name: str) -> BaseProvider:
        """Return a provider by its registered name."""
        provider = self.registry.get(name)
        if provider is None:
            raise UnknownProviderError(name, "is not registered")
        return provider

    def capabilities(self, provider: str) -> ProviderCapabilities:
        return self.get_provider(provider).capabilities

    def _prepare(self, req: RequestLike, options: Mapping[str, Any], *, stream: bool) -> ChatRequest:
        if isinstance(req, ChatRequest):
            data: dict[str, Any] = {**dict(req), **options}
        elif isinstance(req, (str, TargetResolution)):
            target = resolve_target(req)
            data = {**options, "provider": target.provider, "model": target.model}
        else:
            data = {**req, **options}
            target_string = data.pop("target", None)
            if isinstance(target_string, str):
                target = resolve_target({"target": target_string})
                data.update(provider=target.provider, model=target.model)
            elif not data.get("provider"):
                target = resolve_target(
                    {
                        "provider": self.config.default_provider,
                        "model": data.get("model") or self.config.default_model,
                    }
                )
                data.update(provider=target.provider, model=target.model)
            elif isinstance(data["provider"], str):
                # aliases such as "oai" or "claude"; unknown names are left for validation
                data["provider"] = resolve_provider_alias(data["provider"]) or data["provider"]
        data["stream"] = stream
        return validate_chat_request(data)

    def _endpoint(self, provider: BaseProvider, req: ChatRequest) -> tuple[ChatRequest, str | None, str | None]:
        headers = self.config.headers_for(provider.id)
        if headers:
            req = req.model_copy(update={"extra_headers": {**headers, **(req.extra_headers or {})}})
        return req, self.config.api_key_for(provider.id), self.config.base_url_for(provider.id)

    async def chat(self, req: RequestLike, **options: Any) -> ChatResponse:
        """Execute one blocking chat completion.

        ``req`` is a :class:`ChatRequest`, a mapping, or a target such as
        ``"openai/gpt-4o-mini"`` with the remaining fields as keyword options.
        """
        request = self._prepare(req, options, stream=False)
        return await self._send(request)

    async def _send(self, request: ChatRequest) -> ChatResponse:
        provider = self.get_provider(request.provider)
        request, api_key, base_url = self._endpoint(provider, request)
        response = await provider.chat(request, api_key, base_url)
        if self.config.on_usage is not None:
            self.config.on_usage(response.usage, {"provider": provider.id, "model": request.model})
        return response

    def stream_chat(self, req: RequestLike, **options: Any) -> AsyncIterator[ChatStreamChunk]:
        """Stream chunks for a chat request. Validation errors raise immediately."""
        request = self._prepare(req, options, stream=True)
        return self._open_stream(request)

    def _streaming_provider(self, name: str) -> BaseProvider:
        provider = self.get_provider(name)
        if not provider.capabilities.streaming:
            raise UnsupportedFeatureError("streaming", provider.id)
        return provider

    def _open_stream(self, request: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        provider = self._streaming_provider(request.provider)
        request, api_key, base_url = self._endpoint(provider, request)
        return provider.stream_chat(request, api_key, base_url)

    async def stream_to_text(self, req: RequestLike, **options: Any) -> str:
        """Stream a request and return the concatenated text deltas."""
        parts = []
        async for chunk in self.stream_chat(req, **options):
            if isinstance(chunk.delta.content, str):
                parts.append(chunk.delta.content)
        return "".join(parts)

    async def chat_with_tools(
        self,
        req: RequestLike,
        handlers: ToolHandlers,
        *,
        max_calls: int = DEFAULT_MAX_TOOL_CALLS,
        **options: Any,
    ) -> ChatResponse:
        """Run tool rounds until the model answers without tool calls.

        At most ``max_calls + 1`` requests are sent; a model that still asks for
        tools after that raises :class:`ToolLoopExceededError`.
        """
        request = self._prepare(req, options, stream=False)
        messages: list[Message] = list(request.messages)
        tool_choice = request.tool_choice
        calls = 0

        while calls <= max_calls:
            response = await self._send(
                request.model_copy(update={"messages": list(messages), "tool_choice": tool_choice})
            )
            message = response.message
            tool_calls = (message.tool_calls if message is not None else None) or []
            if not tool_calls:
                return response

            logger.debug("Tool round %d: %d call(s)", calls + 1, len(tool_calls))
            messages.append(Message(role="assistant", content=message.content, tool_calls=tool_calls))
            messages.extend(await run_tool_calls(tool_calls, handlers))

            calls += 1
            tool_choice = next_tool_choice(tool_choice)
            if request.cancel is not None:
                request.cancel.raise_if_cancelled()

        raise ToolLoopExceededError(max_calls, "chat_with_tools")

    def stream_with_tools(
        self,
        req: RequestLike,
        handlers: ToolHandlers,
        *,
        max_calls: int = DEFAULT_MAX_TOOL_CALLS,
        **options: Any,
    ) -> AsyncIterator[ChatStreamChunk]:
        """Stream every round to the caller, executing tool calls between rounds.

        Chunks are forwarded as they arrive. Handlers run only after the round
        that produced their call has finished streaming.
        """
        request = self._prepare(req, options, stream=True)
        self._streaming_provider(request.provider)

        async def _gen() -> AsyncIterator[ChatStreamChunk]:
            messages: list[Message] = list(request.messages)
            tool_choice = request.tool_choice
            calls = 0

            while calls <= max_calls:
                accumulator = ToolCallAccumulator()
                text: list[str] = []
                stream = self._open_stream(
                    request.model_copy(update={"messages": list(messages), "tool_choice": tool_choice})
                )
                async with aclosing(stream):
                    async for chunk in stream:
                        accumulator.add(chunk.delta.tool_calls)
                        if chunk.delta.content:
                            text.append(chunk.delta.content)
                        yield chunk

                if not accumulator:
                    return
                tool_calls = accumulator.tool_calls()
                if not tool_calls:
                    logger.debug("Stream ended with nameless tool-call fragments; finishing")
                    return

                logger.debug("Streamed tool round %d: %d call(s)", calls + 1, len(tool_calls))
                messages.append(Message(role="assistant", content="".join(text), tool_calls=tool_calls))
                messages.extend(await run_tool_calls(tool_calls, handlers))

                calls += 1
                tool_choice = next_tool_choice(tool_choice)
                if request.cancel is not None:
                    request.cancel.raise_if_cancelled()

            raise ToolLoopExceededError(max_calls, "stream_with_tools")

        return _gen()

    async def verify_model(self, target: TargetLike) -> ModelCheck:
        """Check that the resolved model is served by its provider.

        Uses the adapter's ``list_models`` when it has one, else ``GET {base}/models``.
        Failures are reported in ``error`` rather than raised.
        """
        resolved = resolve_target(target)
        check = ModelCheck(provider=resolved.provider, model=resolved.model, exists=False)

        provider = self.registry.get(resolved.provider)
        if provider is None:
            check.error = f"Provider '{resolved.provider}' is not registered"
            return check

        api_key = self.config.api_key_for(provider.id)
        base_url = self.config.base_url_for(provider.id) or provider.default_base_url
        if not base_url:
            check.error = f"Base URL is not configured for provider '{provider.id}'"
            return check

        try:
            if provider.capabilities.list_models:
                models = await provider.list_models(api_key, base_url, self.config.headers_for(provider.id))
            else:
                models = await self._list_models_over_http(provider, api_key, base_url)
        except TransportError as exc:
            detail = exc.body if exc.status_code is not None else str(exc)
            check.error = describe_http_failure(exc.status_code, provider.id, detail or "")
            return check
        except ChatBridgeError as exc:
            check.error = str(exc)
            return check

        check.models = models
        check.exists = resolved.model in models
        if not check.exists:
            check.error = f"Model '{resolved.model}' is not among the {len(models)} models listed by '{provider.id}'"
        return check

    async def _list_models_over_http(self, provider: BaseProvider, api_key: str | None, base_url: str) -> list[str]:
        headers = {"Authorization": f"Bearer {api_key or ''}", "Accept": "application/json"}
        headers.update(self.config.headers_for(provider.id))
        response = await provider.transport.perform(
            join_url(base_url, "/models"), method="GET", headers=headers, provider=provider.id
        )
        if not response.is_success:
            raise TransportError(
                provider.id,
                "listing models failed",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProtocolParseError(provider.id, f"/models returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolParseError(provider.id, "/models returned a non-object payload")
        entries = data.get("data") or data.get("models") or []
        return [m["id"] for m in entries if isinstance(m, dict) and isinstance(m.get("id"), str)]
