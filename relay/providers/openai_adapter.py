"""OpenAI-compatible chat completions adapter.

Serves OpenAI itself and every vendor that speaks the same streaming
/chat/completions dialect (DeepSeek, Qwen, Kimi, GLM, MiniMax, self-hosted
endpoints). Tool-call fragments are keyed by their ``index`` in the delta
and flushed as ToolUseChunks when the choice reports a finish_reason.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import httpx

from relay.config.schema import HttpConfig, ModelProfile
from relay.providers.base import HttpModelAdapter
from relay.providers.stream import StreamParser, as_int
from relay.providers.types import (
    AssistantMessage,
    Message,
    ModelCapabilities,
    StopReason,
    StreamChunk,
    TokenUsage,
    ToolResultMessage,
    ToolSpec,
    UserMessage,
)

_FINISH_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "content_filter": StopReason.OTHER,
}

_REASONING_PREFIXES = ("o1", "o3", "o4", "gpt-5")


def map_finish_reason(raw: str | None) -> StopReason:
    return _FINISH_REASONS.get(raw or "", StopReason.OTHER)


def parse_usage(usage: dict[str, Any]) -> TokenUsage:
    """Map an OpenAI-style usage object, including DeepSeek's cache counters."""
    details = usage.get("prompt_tokens_details") or {}
    cache_read = as_int(details.get("cached_tokens"))
    if "prompt_cache_hit_tokens" in usage:
        cache_read = as_int(usage.get("prompt_cache_hit_tokens"))
    return TokenUsage(
        input_tokens=as_int(usage.get("prompt_tokens")),
        output_tokens=as_int(usage.get("completion_tokens")),
        cache_read_tokens=cache_read,
        cache_creation_tokens=as_int(usage.get("prompt_cache_miss_tokens")),
    )


class OpenAIStreamParser(StreamParser):
    """Parser for one chat.completion.chunk stream."""

    def parse_frame(self, frame: Any) -> list[StreamChunk]:
        acc = self.accumulator
        chunks: list[StreamChunk] = []

        choices = frame.get("choices") or []
        if choices:
            choice = choices[0]
            delta = choice.get("delta") or {}

            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if reasoning:
                chunks.append(acc.add_thinking(reasoning))

            content = delta.get("content")
            if content:
                chunks.append(acc.add_text(content))

            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                fn = tc.get("function") or {}
                acc.start_tool(index, tc.get("id") or "", fn.get("name") or "")
                acc.append_tool_arguments(index, fn.get("arguments") or "")

            raw_reason = choice.get("finish_reason")
            if raw_reason:
                chunks.extend(acc.close_all_tools())
                chunks.append(acc.set_stop(map_finish_reason(raw_reason), raw_reason))

        usage = frame.get("usage")
        if usage:
            chunks.append(acc.set_usage(parse_usage(usage)))

        return chunks


class OpenAICompatAdapter(HttpModelAdapter):
    """Adapter for any endpoint that speaks the OpenAI chat completions protocol."""

    def __init__(
        self,
        profile: ModelProfile,
        *,
        provider_name: str,
        api_base: str,
        http: HttpConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        stream_usage: bool = True,
    ) -> None:
        super().__init__(
            profile,
            provider_name=provider_name,
            api_base=api_base,
            http=http,
            transport=transport,
        )
        self._stream_usage = stream_usage

    def _endpoint(self) -> str:
        return "/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "text/event-stream"}

    def _new_parser(self) -> OpenAIStreamParser:
        return OpenAIStreamParser(self.model_name, self.provider_name)

    def _build_payload(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[ToolSpec],
        options: dict[str, Any],
    ) -> dict[str, Any]:
        wire_messages = self.format_messages(messages)
        if system_prompt:
            wire_messages.insert(0, {"role": "system", "content": system_prompt})

        payload: dict[str, Any] = {
            "model": self.model_name,
            "messages": wire_messages,
            "stream": True,
        }
        if self._stream_usage:
            payload["stream_options"] = {"include_usage": True}

        max_tokens = options.get("max_tokens") or self._profile.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if options.get("temperature") is not None:
            payload["temperature"] = options["temperature"]
        if options.get("stop_sequences"):
            payload["stop"] = list(options["stop_sequences"])

        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.json_schema,
                    },
                }
                for t in tools
            ]
            payload["tool_choice"] = "auto"
        return payload

    def format_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg, UserMessage):
                formatted.append({"role": "user", "content": msg.content})
            elif isinstance(msg, AssistantMessage):
                entry: dict[str, Any] = {"role": "assistant", "content": msg.content}
                if msg.tool_calls:
                    entry["content"] = msg.content or None
                    entry["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                            },
                        }
                        for tc in msg.tool_calls
                    ]
                formatted.append(entry)
            elif isinstance(msg, ToolResultMessage):
                formatted.append(
                    {"role": "tool", "tool_call_id": msg.tool_use_id, "content": msg.content}
                )
        return formatted

    def capabilities(self) -> ModelCapabilities:
        p = self._profile
        name = p.model_name.lower()
        vision = "vision" in name or "gpt-4" in name
        thinking = "reasoner" in name or name.startswith(_REASONING_PREFIXES)
        return ModelCapabilities(
            supports_streaming=True,
            supports_tools=self._resolve_flag(p.supports_tools, True),
            supports_vision=self._resolve_flag(p.supports_vision, vision),
            supports_thinking=self._resolve_flag(p.supports_thinking, thinking),
            max_context_length=p.context_length,
            max_output_tokens=p.max_tokens,
            api_type="openai",
        )
