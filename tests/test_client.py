import asyncio
import json
import unittest
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import patch

import httpx

from chatbridge.client import LLMClient
from chatbridge.config import ClientConfig
from chatbridge.errors import (
    RequestCancelledError,
    RequestValidationError,
    TargetResolutionError,
    ToolLoopExceededError,
    UnknownProviderError,
    UnsupportedFeatureError,
)
from chatbridge.providers.base import BaseProvider
from chatbridge.transport import CancellationToken, HttpTransport
from chatbridge.types import (
    ChatRequest,
    ChatResponse,
    ChatStreamChunk,
    Choice,
    Delta,
    FunctionCall,
    FunctionCallDelta,
    Message,
    ToolCall,
    ToolCallDelta,
    Usage,
)

USER = [{"role": "user", "content": "What is 1 + 2?"}]


class ScriptedProvider(BaseProvider):
    """Replays canned responses; the last one repeats once the script runs out."""

    id = "openai"
    name = "Scripted"

    def __init__(
        self,
        responses: list[ChatResponse] | None = None,
        streams: list[list[ChatStreamChunk]] | None = None,
    ) -> None:
        super().__init__()
        self.responses = responses or []
        self.streams = streams or []
        self.requests: list[ChatRequest] = []
        self.endpoints: list[tuple[str | None, str | None]] = []

    async def chat(self, req: ChatRequest, api_key: str | None = None, base_url: str | None = None) -> ChatResponse:
        self.requests.append(req)
        self.endpoints.append((api_key, base_url))
        return self.responses[min(len(self.requests), len(self.responses)) - 1]

    def stream_chat(
        self, req: ChatRequest, api_key: str | None = None, base_url: str | None = None
    ) -> AsyncIterator[ChatStreamChunk]:
        self.requests.append(req)
        chunks = self.streams[min(len(self.requests), len(self.streams)) - 1]

        async def _gen() -> AsyncIterator[ChatStreamChunk]:
            for chunk in chunks:
                yield chunk

        return _gen()


class ChatOnlyProvider(BaseProvider):
    id = "anthropic"
    name = "Chat only"

    async def chat(self, req: ChatRequest, api_key: str | None = None, base_url: str | None = None) -> ChatResponse:
        return _text_response("ok", provider=self.id)


class ClientDispatchTests(unittest.TestCase):
    def test_chat_dispatches_and_reports_usage(self) -> None:
        usage_calls: list[tuple] = []
        provider = ScriptedProvider([_text_response("3", usage=Usage(prompt_tokens=4, completion_tokens=1))])
        client = LLMClient(ClientConfig(on_usage=lambda usage, meta: usage_calls.append((usage, meta)))).use(provider)

        res = asyncio.run(client.chat({"provider": "openai", "model": "gpt-4o", "messages": USER, "stream": True}))

        self.assertEqual(res.text, "3")
        self.assertFalse(provider.requests[0].stream)
        self.assertEqual(len(usage_calls), 1)
        self.assertEqual(usage_calls[0][0].prompt_tokens, 4)
        self.assertEqual(usage_calls[0][1], {"provider": "openai", "model": "gpt-4o"})

    def test_target_string_with_options(self) -> None:
        provider = ScriptedProvider([_text_response("hi")])
        client = LLMClient().use(provider)

        asyncio.run(client.chat("oai/gpt-4o-mini", messages=USER, temperature=0.1))

        req = provider.requests[0]
        self.assertEqual((req.provider, req.model, req.temperature), ("openai", "gpt-4o-mini", 0.1))

    def test_mapping_targets_and_aliases(self) -> None:
        provider = ScriptedProvider([_text_response("hi")])
        client = LLMClient(ClientConfig(default_model="gpt-4o")).use(provider)

        asyncio.run(client.chat({"target": "openai gpt-4.1", "messages": USER}))
        asyncio.run(client.chat({"provider": "open-ai", "model": "gpt-4o", "messages": USER}))
        asyncio.run(client.chat({"messages": USER}))

        self.assertEqual([r.model for r in provider.requests], ["gpt-4.1", "gpt-4o", "gpt-4o"])
        self.assertTrue(all(r.provider == "openai" for r in provider.requests))

    def test_existing_request_object(self) -> None:
        provider = ScriptedProvider([_text_response("hi")])
        client = LLMClient().use(provider)
        req = ChatRequest(provider="openai", model="gpt-4o", messages=[Message(role="user", content="x")])

        asyncio.run(client.chat(req, max_tokens=5))

        self.assertEqual(provider.requests[0].max_tokens, 5)
        self.assertIsNone(req.max_tokens)

    def test_errors_raise_before_dispatch(self) -> None:
        provider = ScriptedProvider([_text_response("hi")])
        client = LLMClient().use(provider)

        with self.assertRaises(UnknownProviderError):
            asyncio.run(client.chat("anthropic/claude-3-haiku", messages=USER))
        with self.assertRaises(RequestValidationError):
            asyncio.run(client.chat("openai/gpt-4o", messages=[]))
        with self.assertRaises(TargetResolutionError):
            asyncio.run(client.chat("mystery-model", messages=USER))
        self.assertEqual(provider.requests, [])

    def test_stream_requires_streaming_capability(self) -> None:
        client = LLMClient().use(ChatOnlyProvider())
        self.assertFalse(client.capabilities("anthropic").streaming)
        with self.assertRaises(UnsupportedFeatureError):
            client.stream_chat("anthropic/claude-3-haiku", messages=USER)
        with self.assertRaises(UnsupportedFeatureError):
            client.stream_with_tools("anthropic/claude-3-haiku", {}, messages=USER)

    def test_default_registry(self) -> None:
        client = LLMClient.create_default()
        self.assertEqual(
            client.registry.ids(),
            ["openai", "anthropic", "groq", "gemini", "openrouter", "sambanova", "cerebras", "v1"],
        )
        self.assertTrue(client.registry.has("v1"))
        self.assertNotIn("together", client.registry)
        self.assertTrue(client.capabilities("anthropic").streaming)
        self.assertTrue(client.capabilities("groq").list_models)
        self.assertFalse(client.capabilities("anthropic").list_models)
        asyncio.run(client.aclose())

    def test_stream_to_text(self) -> None:
        provider = ScriptedProvider(streams=[[_text_chunk("Hel"), _text_chunk("lo"), _chunk(finish_reason="stop")]])
        client = LLMClient().use(provider)

        text = asyncio.run(client.stream_to_text("openai/gpt-4o", messages=USER))

        self.assertEqual(text, "Hello")
        self.assertTrue(provider.requests[0].stream)

    def test_config_supplies_credentials_and_headers(self) -> None:
        provider = ScriptedProvider([_text_response("hi")])
        with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}):
            config = ClientConfig(proxy="https://proxy.local/", headers={"openai": {"X-Team": "core"}})
        client = LLMClient(config).use(provider)

        asyncio.run(client.chat("openai/gpt-4o", messages=USER, extra_headers={"X-Req": "1"}))

        self.assertEqual(provider.endpoints[0], ("env-key", "https://proxy.local/openai/v1"))
        self.assertEqual(provider.requests[0].extra_headers, {"X-Team": "core", "X-Req": "1"})


class ChatWithToolsTests(unittest.TestCase):
    def test_runs_tools_then_returns_final_answer(self) -> None:
        provider = ScriptedProvider([_tool_response(_call("call_1", "add", '{"a": 1, "b": 2}')), _text_response("3")])
        client = LLMClient().use(provider)
        calls: list[dict] = []

        def add(args: dict) -> dict:
            calls.append(args)
            return {"sum": args["a"] + args["b"]}

        res = asyncio.run(
            client.chat_with_tools("openai/gpt-4o", {"add": add}, messages=USER, tool_choice="required")
        )

        self.assertEqual(res.text, "3")
        self.assertEqual(calls, [{"a": 1, "b": 2}])
        self.assertEqual([r.tool_choice for r in provider.requests], ["required", "none"])

        followup = provider.requests[1].messages
        self.assertEqual([m.role for m in followup], ["user", "assistant", "tool"])
        self.assertEqual(followup[1].tool_calls[0].id, "call_1")
        self.assertEqual(followup[2].tool_call_id, "call_1")
        self.assertEqual(json.loads(followup[2].content), {"sum": 3})
        # the caller's message list is left untouched
        self.assertEqual(len(provider.requests[0].messages), 1)

    def test_auto_choice_and_unknown_tool(self) -> None:
        provider = ScriptedProvider([_tool_response(_call("c", "nope", "{}")), _text_response("sorry")])
        client = LLMClient().use(provider)

        asyncio.run(client.chat_with_tools("openai/gpt-4o", {}, messages=USER))

        self.assertEqual([r.tool_choice for r in provider.requests], [None, "auto"])
        self.assertEqual(json.loads(provider.requests[1].messages[-1].content), {"error": "No handler for tool: nope"})

    def test_loop_cap_is_exact(self) -> None:
        provider = ScriptedProvider([_tool_response(_call("c", "ping", "{}"))])
        client = LLMClient().use(provider)
        pings: list[dict] = []

        with self.assertRaises(ToolLoopExceededError) as ctx:
            asyncio.run(client.chat_with_tools("openai/gpt-4o", {"ping": pings.append}, messages=USER, max_calls=3))

        self.assertEqual(ctx.exception.max_calls, 3)
        self.assertEqual(len(provider.requests), 4)
        self.assertEqual(len(pings), 4)

    def test_cancellation_token_travels_with_every_round(self) -> None:
        provider = ScriptedProvider([_tool_response(_call("c", "ping", "{}")), _text_response("done")])
        client = LLMClient().use(provider)
        token = CancellationToken()

        asyncio.run(client.chat_with_tools("openai/gpt-4o", {"ping": lambda args: "pong"}, messages=USER, cancel=token))

        self.assertTrue(all(r.cancel is token for r in provider.requests))

    def test_cancel_from_a_handler_stops_the_loop(self) -> None:
        provider = ScriptedProvider([_tool_response(_call("c", "stop", "{}")), _text_response("unreachable")])
        client = LLMClient().use(provider)
        token = CancellationToken()

        def stop(args: dict) -> str:
            token.cancel()
            return "stopping"

        with self.assertRaises(RequestCancelledError):
            asyncio.run(client.chat_with_tools("openai/gpt-4o", {"stop": stop}, messages=USER, cancel=token))
        self.assertEqual(len(provider.requests), 1)


class StreamWithToolsTests(unittest.TestCase):
    def test_fragments_accumulate_and_rounds_continue(self) -> None:
        round_one = [
            _text_chunk("Let me add. "),
            _chunk(tool_calls=[_frag("call_1", name="add", arguments='{"a"')]),
            _chunk(tool_calls=[_frag("call_1", arguments=":1")]),
            _chunk(tool_calls=[_frag("call_1", arguments="}")], finish_reason="tool_calls"),
        ]
        round_two = [_text_chunk("It is 1."), _chunk(finish_reason="stop")]
        provider = ScriptedProvider(streams=[round_one, round_two])
        client = LLMClient().use(provider)
        received: list[ChatStreamChunk] = []
        seen_at_call: list[int] = []

        def add(args: dict) -> int:
            seen_at_call.append(len(received))
            return args["a"]

        async def consume() -> None:
            async for chunk in client.stream_with_tools("openai/gpt-4o", {"add": add}, messages=USER):
                received.append(chunk)

        asyncio.run(consume())

        self.assertEqual(received, round_one + round_two)
        # the handler ran once, after every fragment of its round was delivered
        self.assertEqual(seen_at_call, [4])
        assistant = provider.requests[1].messages[1]
        self.assertEqual(assistant.content, "Let me add. ")
        self.assertEqual(assistant.tool_calls[0].function.arguments, '{"a":1}')
        self.assertEqual(provider.requests[1].messages[2].content, "1")
        self.assertEqual([r.tool_choice for r in provider.requests], [None, "auto"])

    def test_no_tool_calls_ends_after_one_round(self) -> None:
        provider = ScriptedProvider(streams=[[_text_chunk("plain answer")]])
        client = LLMClient().use(provider)

        chunks = asyncio.run(_collect(client.stream_with_tools("openai/gpt-4o", {}, messages=USER)))

        self.assertEqual([c.delta.content for c in chunks], ["plain answer"])
        self.assertEqual(len(provider.requests), 1)

    def test_nameless_fragments_end_gracefully(self) -> None:
        provider = ScriptedProvider(streams=[[_chunk(tool_calls=[_frag("0", arguments="{}")])]])
        client = LLMClient().use(provider)
        called: list[dict] = []

        chunks = asyncio.run(_collect(client.stream_with_tools("openai/gpt-4o", {"x": called.append}, messages=USER)))

        self.assertEqual(len(chunks), 1)
        self.assertEqual(called, [])
        self.assertEqual(len(provider.requests), 1)

    def test_forced_choice_downgrades_and_cap_applies(self) -> None:
        looping = [_chunk(tool_calls=[_frag("c", name="ping", arguments="{}")])]
        provider = ScriptedProvider(streams=[looping])
        client = LLMClient().use(provider)
        forced = {"type": "function", "function": {"name": "ping"}}

        stream = client.stream_with_tools(
            "openai/gpt-4o", {"ping": lambda args: "pong"}, messages=USER, tool_choice=forced, max_calls=1
        )
        with self.assertRaises(ToolLoopExceededError):
            asyncio.run(_collect(stream))

        self.assertEqual(len(provider.requests), 2)
        self.assertEqual(provider.requests[1].tool_choice, "none")


def _text_response(text: str, *, provider: str = "openai", usage: Usage | None = None) -> ChatResponse:
    return _response(Message(role="assistant", content=text), provider=provider, usage=usage)


def _tool_response(*calls: ToolCall) -> ChatResponse:
    return _response(Message(role="assistant", content=None, tool_calls=list(calls)), finish_reason="tool_calls")


def _response(
    message: Message, *, provider: str = "openai", usage: Usage | None = None, finish_reason: str = "stop"
) -> ChatResponse:
    return ChatResponse(
        id="r",
        created=0,
        model="gpt-4o",
        choices=[Choice(index=0, message=message, finish_reason=finish_reason)],
        usage=usage,
        provider=provider,
    )


def _call(call_id: str, name: str, arguments: str) -> ToolCall:
    return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments))


def _frag(call_id: str, *, name: str | None = None, arguments: str = "") -> ToolCallDelta:
    return ToolCallDelta(id=call_id, function=FunctionCallDelta(name=name, arguments=arguments))


def _chunk(*, tool_calls: list[ToolCallDelta] | None = None, finish_reason: str | None = None) -> ChatStreamChunk:
    return ChatStreamChunk(delta=Delta(tool_calls=tool_calls), finish_reason=finish_reason)


def _text_chunk(text: str) -> ChatStreamChunk:
    return ChatStreamChunk(delta=Delta(role="assistant", content=text))


async def _collect(stream: AsyncIterator[ChatStreamChunk]) -> list[ChatStreamChunk]:
    chunks: list[ChatStreamChunk] = []
    async for chunk in stream:
        chunks.append(chunk)
    return chunks


class VerifyModelTests(unittest.TestCase):
    def setUp(self) -> None:
        self.seen: list[httpx.Request] = []

    def _client(self, status: int = 200, payload: object = None, **config: Any) -> LLMClient:
        def handler(request: httpx.Request) -> httpx.Response:
            self.seen.append(request)
            if status != 200:
                return httpx.Response(status, text="nope")
            return httpx.Response(200, json=payload if payload is not None else {"data": [{"id": "m1"}]})

        transport = HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        return LLMClient.create_default(ClientConfig(**config), transport=transport)

    def test_model_listed(self) -> None:
        client = self._client(base_urls={"v1": "https://gw.local/v1"}, api_keys={"v1": "k"})

        check = asyncio.run(client.verify_model("v1/m1"))

        self.assertTrue(check.exists)
        self.assertIsNone(check.error)
        self.assertEqual(check.models, ["m1"])
        self.assertEqual(str(self.seen[0].url), "https://gw.local/v1/models")
        self.assertEqual(self.seen[0].headers["authorization"], "Bearer k")

    def test_listing_carries_configured_headers(self) -> None:
        client = self._client(payload={"data": [{"id": "llama-3.1-8b-instant"}]}, headers={"groq": {"X-Gateway": "g1"}})

        check = asyncio.run(client.verify_model("groq/llama-3.1-8b-instant"))

        self.assertTrue(check.exists)
        self.assertEqual(str(self.seen[0].url), "https://api.groq.com/openai/v1/models")
        self.assertEqual(self.seen[0].headers["x-gateway"], "g1")

    def test_model_missing_from_listing(self) -> None:
        check = asyncio.run(self._client().verify_model("openai/gpt-unknown"))
        self.assertFalse(check.exists)
        self.assertIn("gpt-unknown", check.error)

    def test_http_failures_are_diagnosed(self) -> None:
        for status, phrase in ((401, "Unauthorized"), (403, "Forbidden"), (404, "Not found"), (503, "Server error")):
            with self.subTest(status=status):
                check = asyncio.run(self._client(status).verify_model("openai/gpt-4o"))
                self.assertFalse(check.exists)
                self.assertIn(phrase, check.error)
                self.assertIn("nope", check.error)

    def test_missing_base_url(self) -> None:
        check = asyncio.run(self._client().verify_model("v1/anything"))
        self.assertFalse(check.exists)
        self.assertEqual(check.error, "Base URL is not configured for provider 'v1'")
        self.assertEqual(self.seen, [])

    def test_falls_back_to_models_endpoint(self) -> None:
        client = self._client(
            payload={"data": [{"id": "claude-3-haiku"}]},
            base_urls={"anthropic": "https://gw.local/anthropic"},
            headers={"anthropic": {"X-Team": "core"}},
        )

        check = asyncio.run(client.verify_model("claude-3-haiku"))

        self.assertTrue(check.exists)
        self.assertEqual(self.seen[0].method, "GET")
        self.assertEqual(str(self.seen[0].url), "https://gw.local/anthropic/models")
        self.assertEqual(self.seen[0].headers["x-team"], "core")

    def test_unregistered_provider(self) -> None:
        client = LLMClient().use(ScriptedProvider())
        check = asyncio.run(client.verify_model("groq/llama-3.1-8b-instant"))
        self.assertFalse(check.exists)
        self.assertIn("not registered", check.error)


if __name__ == "__main__":
    unittest.main()
