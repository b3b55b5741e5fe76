"""Tests for the OpenAI-compatible adapter and its stream parser."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from pydantic import SecretStr

from relay.config.schema import ModelProfile
from relay.providers.exceptions import (
    AuthenticationError,
    ConfigError,
    ProviderConnectionError,
    RateLimitError,
)
from relay.providers.openai_adapter import (
    OpenAICompatAdapter,
    OpenAIStreamParser,
    map_finish_reason,
    parse_usage,
)
from relay.providers.types import (
    AssistantMessage,
    CompleteChunk,
    StopChunk,
    StopReason,
    TextChunk,
    ThinkingChunk,
    TokenUsage,
    ToolCall,
    ToolResultMessage,
    ToolSpec,
    ToolUseChunk,
    UsageChunk,
    UserMessage,
)


def _adapter(server=None, **overrides) -> OpenAICompatAdapter:
    fields = {"provider": "openai", "model_name": "gpt-4o", "api_key": SecretStr("sk-test")}
    fields.update(overrides)
    return OpenAICompatAdapter(
        ModelProfile(**fields),
        provider_name=fields["provider"],
        api_base="https://api.openai.com/v1",
        transport=server.transport if server else None,
    )


def _delta(**delta) -> dict:
    return {"choices": [{"index": 0, "delta": delta}]}


def _finish(reason: str, **delta) -> dict:
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": reason}]}


HI = [UserMessage("hi")]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_text_deltas_then_done(self, sse_server, drain):
        server = sse_server([_delta(content="Hi"), _delta(content=" there")])
        chunks = await drain(_adapter(server).query(HI))

        assert chunks[:2] == [TextChunk("Hi"), TextChunk(" there")]
        assert len(chunks) == 3
        complete = chunks[2]
        assert isinstance(complete, CompleteChunk)
        assert complete.message.content == "Hi there"
        assert complete.model_name == "gpt-4o"

    @pytest.mark.asyncio
    async def test_stop_and_usage_precede_complete(self, sse_server, drain):
        server = sse_server(
            [
                _delta(role="assistant", content="a"),
                _delta(content="b"),
                _delta(content="c"),
                _finish("stop"),
                {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 3}},
            ]
        )
        chunks = await drain(_adapter(server).query(HI))

        assert [type(c) for c in chunks] == [
            TextChunk,
            TextChunk,
            TextChunk,
            StopChunk,
            UsageChunk,
            CompleteChunk,
        ]
        assert chunks[3] == StopChunk(reason=StopReason.END_TURN, raw_reason="stop")
        assert chunks[-1].usage == TokenUsage(input_tokens=9, output_tokens=3)
        assert chunks[-1].message.stop_reason is StopReason.END_TURN

    @pytest.mark.asyncio
    async def test_usage_before_stop_frame_is_kept(self, sse_server, drain):
        server = sse_server(
            [
                {
                    "choices": [{"index": 0, "delta": {"content": "ok"}}],
                    "usage": {"prompt_tokens": 4, "completion_tokens": 1},
                },
                _finish("length"),
            ]
        )
        chunks = await drain(_adapter(server).query(HI))

        complete = chunks[-1]
        assert complete.usage == TokenUsage(input_tokens=4, output_tokens=1)
        assert complete.message.stop_reason is StopReason.MAX_TOKENS

    @pytest.mark.asyncio
    async def test_tool_call_fragments_assembled_by_index(self, sse_server, drain):
        server = sse_server(
            [
                _delta(
                    tool_calls=[
                        {
                            "index": 0,
                            "id": "call_a",
                            "type": "function",
                            "function": {"name": "FileRead", "arguments": ""},
                        }
                    ]
                ),
                _delta(tool_calls=[{"index": 0, "function": {"arguments": '{"path":'}}]),
                _delta(
                    tool_calls=[
                        {"index": 1, "id": "call_b", "function": {"name": "Bash", "arguments": ""}}
                    ]
                ),
                _delta(tool_calls=[{"index": 0, "function": {"arguments": ' "a.txt"}'}}]),
                _delta(tool_calls=[{"index": 1, "function": {"arguments": '{"command": "ls"}'}}]),
                _finish("tool_calls"),
            ]
        )
        chunks = await drain(_adapter(server).query(HI))

        tool_chunks = [c for c in chunks if isinstance(c, ToolUseChunk)]
        assert tool_chunks == [
            ToolUseChunk(id="call_a", name="FileRead", arguments_so_far='{"path": "a.txt"}'),
            ToolUseChunk(id="call_b", name="Bash", arguments_so_far='{"command": "ls"}'),
        ]
        message = chunks[-1].message
        assert message.stop_reason is StopReason.TOOL_USE
        assert message.tool_calls == (
            ToolCall(id="call_a", name="FileRead", arguments={"path": "a.txt"}),
            ToolCall(id="call_b", name="Bash", arguments={"command": "ls"}),
        )

    @pytest.mark.asyncio
    async def test_reasoning_content_becomes_thinking(self, sse_server, drain):
        server = sse_server(
            [_delta(reasoning_content="let me see"), _delta(content="42"), _finish("stop")]
        )
        chunks = await drain(_adapter(server, provider="deepseek").query(HI))

        assert chunks[0] == ThinkingChunk("let me see")
        assert chunks[-1].message.thinking_content == "let me see"
        assert chunks[-1].message.content == "42"

    @pytest.mark.asyncio
    async def test_malformed_frame_skipped(self, sse_server, drain):
        server = sse_server([_delta(content="a"), "{not json", _delta(content="b")])
        chunks = await drain(_adapter(server).query(HI))
        assert chunks[-1].message.content == "ab"

    @pytest.mark.asyncio
    async def test_stream_without_done_still_completes(self, sse_server, drain):
        server = sse_server([_delta(content="partial")], done=False)
        chunks = await drain(_adapter(server).query(HI))
        assert sum(isinstance(c, CompleteChunk) for c in chunks) == 1
        assert chunks[-1].message.content == "partial"

    @pytest.mark.asyncio
    async def test_empty_stream_yields_empty_complete(self, sse_server, drain):
        chunks = await drain(_adapter(sse_server([], done=False)).query(HI))
        assert len(chunks) == 1
        assert chunks[0].message.content == ""
        assert chunks[0].usage == TokenUsage()

    @pytest.mark.asyncio
    async def test_concurrent_queries_do_not_mix(self, drain):
        def respond(request: httpx.Request) -> httpx.Response:
            word = json.loads(request.content)["messages"][-1]["content"]
            frames = [_delta(content=f"{word}-{i}") for i in range(3)]
            body = "".join(f"data: {json.dumps(f)}\n\n" for f in frames) + "data: [DONE]\n\n"
            return httpx.Response(200, content=body.encode())

        adapter = OpenAICompatAdapter(
            ModelProfile(model_name="gpt-4o", api_key=SecretStr("sk-test")),
            provider_name="openai",
            api_base="https://api.openai.com/v1",
            transport=httpx.MockTransport(respond),
        )
        left, right = await asyncio.gather(
            drain(adapter.query([UserMessage("left")])),
            drain(adapter.query([UserMessage("right")])),
        )
        assert left[-1].message.content == "left-0left-1left-2"
        assert right[-1].message.content == "right-0right-1right-2"
        await adapter.close()


class TestRequest:
    @pytest.mark.asyncio
    async def test_endpoint_headers_and_payload(self, sse_server, drain):
        server = sse_server([_finish("stop")])
        tool = ToolSpec(name="FileRead", description="Read a file")

        await drain(
            _adapter(server, max_tokens=1000).query(
                HI,
                system_prompt="Be brief.",
                tools=[tool],
                options={"temperature": 0.2, "stop_sequences": ["END"]},
            )
        )

        request = server.last_request
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"

        payload = server.last_payload
        assert payload["model"] == "gpt-4o"
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
        assert payload["messages"][1] == {"role": "user", "content": "hi"}
        assert payload["max_tokens"] == 1000
        assert payload["temperature"] == 0.2
        assert payload["stop"] == ["END"]
        assert payload["tool_choice"] == "auto"
        assert payload["tools"][0]["function"]["name"] == "FileRead"
        assert payload["tools"][0]["function"]["parameters"] == tool.json_schema

    @pytest.mark.asyncio
    async def test_stream_usage_disabled(self, sse_server, drain):
        server = sse_server([_finish("stop")])
        adapter = OpenAICompatAdapter(
            ModelProfile(model_name="glm-4", api_key=SecretStr("k")),
            provider_name="glm",
            api_base="https://open.bigmodel.cn/api/paas/v4",
            transport=server.transport,
            stream_usage=False,
        )
        await drain(adapter.query(HI))
        assert "stream_options" not in server.last_payload
        assert "tools" not in server.last_payload

    def test_format_messages_tool_round(self):
        adapter = _adapter()
        wire = adapter.format_messages(
            [
                UserMessage("read it"),
                AssistantMessage(
                    content="",
                    tool_calls=(ToolCall(id="c1", name="FileRead", arguments={"path": "a"}),),
                ),
                ToolResultMessage(tool_use_id="c1", content="data", tool_name="FileRead"),
            ]
        )
        assert wire[1]["content"] is None
        assert wire[1]["tool_calls"][0]["function"] == {
            "name": "FileRead",
            "arguments": '{"path": "a"}',
        }
        assert wire[2] == {"role": "tool", "tool_call_id": "c1", "content": "data"}


class TestErrors:
    def test_missing_key_raises_before_any_request(self, sse_server):
        server = sse_server([])
        adapter = _adapter(server, api_key=SecretStr(""))
        with pytest.raises(ConfigError):
            adapter.query(HI)
        assert server.requests == []

    def test_missing_model_fails_validation(self):
        result = _adapter(model_name="").validate()
        assert not result.valid
        assert "Model name" in result.error_message

    @pytest.mark.asyncio
    async def test_401_raises_authentication_error(self, sse_server, drain):
        server = sse_server(body=b'{"error": {"message": "bad key"}}', status=401)
        chunks: list = []
        with pytest.raises(AuthenticationError) as exc_info:
            async for chunk in _adapter(server).query(HI):
                chunks.append(chunk)
        assert chunks == []
        assert "bad key" in str(exc_info.value)
        assert exc_info.value.hint

    @pytest.mark.asyncio
    async def test_429_raises_rate_limit(self, sse_server, drain):
        server = sse_server(body=b"slow down", status=429)
        with pytest.raises(RateLimitError):
            await drain(_adapter(server).query(HI))

    @pytest.mark.asyncio
    async def test_connect_failure(self, drain):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = OpenAICompatAdapter(
            ModelProfile(model_name="gpt-4o", api_key=SecretStr("sk-test")),
            provider_name="openai",
            api_base="https://api.openai.com/v1",
            transport=httpx.MockTransport(refuse),
        )
        with pytest.raises(ProviderConnectionError):
            await drain(adapter.query(HI))


class TestParserHelpers:
    def test_finish_reason_mapping(self):
        assert map_finish_reason("stop") is StopReason.END_TURN
        assert map_finish_reason("tool_calls") is StopReason.TOOL_USE
        assert map_finish_reason("length") is StopReason.MAX_TOKENS
        assert map_finish_reason("something_new") is StopReason.OTHER
        assert map_finish_reason(None) is StopReason.OTHER

    def test_unknown_finish_reason_keeps_raw(self):
        parser = OpenAIStreamParser("m", "openai")
        chunks = parser.feed(json.dumps(_finish("weird")))
        assert chunks == [StopChunk(reason=StopReason.OTHER, raw_reason="weird")]

    def test_openai_cached_tokens(self):
        usage = parse_usage(
            {
                "prompt_tokens": 100,
                "completion_tokens": 20,
                "prompt_tokens_details": {"cached_tokens": 60},
            }
        )
        assert usage == TokenUsage(input_tokens=100, output_tokens=20, cache_read_tokens=60)

    def test_deepseek_cache_counters(self):
        usage = parse_usage(
            {
                "prompt_tokens": 100,
                "completion_tokens": 20,
                "prompt_cache_hit_tokens": 70,
                "prompt_cache_miss_tokens": 30,
                "prompt_tokens_details": {"cached_tokens": 5},
            }
        )
        assert usage.cache_read_tokens == 70
        assert usage.cache_creation_tokens == 30

    def test_null_usage_fields(self):
        assert parse_usage({"prompt_tokens": None}) == TokenUsage()


class TestCapabilities:
    def test_reasoning_model_detected(self):
        assert _adapter(model_name="deepseek-reasoner").capabilities().supports_thinking
        assert _adapter(model_name="o3-mini").capabilities().supports_thinking
        assert not _adapter(model_name="gpt-4o-mini").capabilities().supports_thinking

    def test_profile_override_wins(self):
        caps = _adapter(model_name="gpt-4o", supports_vision=False).capabilities()
        assert caps.supports_vision is False
        assert caps.api_type == "openai"
        assert caps.max_context_length == 128_000
