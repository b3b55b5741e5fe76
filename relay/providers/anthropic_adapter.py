"""Anthropic Messages API adapter.

Streams POST /v1/messages and maps the typed SSE events (message_start,
content_block_*, message_delta, message_stop) onto canonical chunks.
Content blocks are tracked by their ``index``; a tool_use block's
argument JSON arrives as input_json_delta fragments and is emitted as a
single ToolUseChunk when the block stops.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from loguru import logger

from relay.providers.base import HttpModelAdapter
from relay.providers.exceptions import (
    AuthenticationError,
    RateLimitError,
    ServerError,
    TransportError,
)
from relay.providers.stream import DONE_SENTINEL, StreamParser, as_int
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

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, StopReason] = {
    "end_turn": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}

_ERROR_TYPES: dict[str, type[TransportError]] = {
    "authentication_error": AuthenticationError,
    "permission_error": AuthenticationError,
    "rate_limit_error": RateLimitError,
    "overloaded_error": ServerError,
    "api_error": ServerError,
}


def map_stop_reason(raw: str | None) -> StopReason:
    return _STOP_REASONS.get(raw or "", StopReason.OTHER)


class AnthropicStreamParser(StreamParser):
    """Parser for one Anthropic streaming response."""

    def __init__(self, model_name: str, provider: str = "anthropic") -> None:
        super().__init__(model_name, provider)
        self._input_tokens = 0
        self._output_tokens = 0
        self._cache_read = 0
        self._cache_creation = 0

    def parse_frame(self, frame: Any) -> list[StreamChunk]:
        event_type = frame.get("type", "")
        acc = self.accumulator

        if event_type == "message_start":
            usage = frame.get("message", {}).get("usage") or {}
            self._input_tokens = as_int(usage.get("input_tokens"))
            self._output_tokens = as_int(usage.get("output_tokens"))
            self._cache_read = as_int(usage.get("cache_read_input_tokens"))
            self._cache_creation = as_int(usage.get("cache_creation_input_tokens"))
            return []

        if event_type == "content_block_start":
            index = frame["index"]
            block = frame.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "tool_use":
                acc.start_tool(index, block.get("id", ""), block.get("name", ""))
                return []
            if block_type == "text":
                chunk = acc.add_text(block.get("text", ""))
                return [chunk] if chunk else []
            if block_type == "thinking":
                chunk = acc.add_thinking(block.get("thinking", ""))
                return [chunk] if chunk else []
            return []

        if event_type == "content_block_delta":
            index = frame["index"]
            delta = frame.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                chunk = acc.add_text(delta.get("text", ""))
                return [chunk] if chunk else []
            if delta_type == "thinking_delta":
                chunk = acc.add_thinking(delta.get("thinking", ""))
                return [chunk] if chunk else []
            if delta_type == "input_json_delta":
                acc.append_tool_arguments(index, delta.get("partial_json", ""))
            return []

        if event_type == "content_block_stop":
            chunk = acc.close_tool(frame["index"])
            return [chunk] if chunk else []

        if event_type == "message_delta":
            chunks: list[StreamChunk] = []
            raw_reason = (frame.get("delta") or {}).get("stop_reason")
            if raw_reason:
                chunks.append(acc.set_stop(map_stop_reason(raw_reason), raw_reason))
            usage = frame.get("usage")
            if usage:
                # output_tokens on message_delta is cumulative for the message
                self._output_tokens = as_int(usage.get("output_tokens"))
                if "input_tokens" in usage:
                    self._input_tokens = as_int(usage.get("input_tokens"))
                chunks.append(acc.set_usage(self._usage()))
            return chunks

        if event_type == "message_stop":
            if acc.usage is None and (self._input_tokens or self._output_tokens):
                acc.set_usage(self._usage())
            return self.finish()

        if event_type == "ping":
            return []

        if event_type == "error":
            error = frame.get("error") or {}
            error_type = error.get("type", "")
            exc_class = _ERROR_TYPES.get(error_type, TransportError)
            raise exc_class(
                f"[{self.provider}] Stream error ({error_type or 'unknown'}): "
                f"{error.get('message', '')}",
                provider=self.provider,
            )

        logger.debug("Ignoring unknown Anthropic event type: {}", event_type)
        return []

    def on_done_sentinel(self) -> list[StreamChunk]:
        logger.debug("Anthropic stream sent {}, treating it as message_stop", DONE_SENTINEL)
        return self.finish()

    def _usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            cache_read_tokens=self._cache_read,
            cache_creation_tokens=self._cache_creation,
        )


class AnthropicAdapter(HttpModelAdapter):
    """Adapter for the Anthropic Messages protocol."""

    def _endpoint(self) -> str:
        return "/v1/messages"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Accept": "text/event-stream",
        }

    def _new_parser(self) -> AnthropicStreamParser:
        return AnthropicStreamParser(self.model_name, self.provider_name)

    def _build_payload(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[ToolSpec],
        options: dict[str, Any],
    ) -> dict[str, Any]:
        max_tokens = options.get("max_tokens") or self._profile.max_tokens or DEFAULT_MAX_TOKENS
        payload: dict[str, Any] = {
            "model": self.model_name,
            "max_tokens": max_tokens,
            "messages": self.format_messages(messages),
            "stream": True,
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.json_schema}
                for t in tools
            ]
        if options.get("temperature") is not None:
            payload["temperature"] = options["temperature"]
        if options.get("stop_sequences"):
            payload["stop_sequences"] = list(options["stop_sequences"])
        return payload

    def format_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        """Build the Messages API envelope.

        Consecutive tool results are merged into one user message, since the
        API requires every tool_result answering an assistant turn to arrive
        together. Assistant turns with neither text nor tool calls are left
        out.
        """
        formatted: list[dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg, UserMessage):
                last = formatted[-1] if formatted else None
                if last is not None and last["role"] == "user" and isinstance(last["content"], str):
                    # Left adjacent by a dropped empty assistant turn.
                    last["content"] = f"{last['content']}\n\n{msg.content}"
                else:
                    formatted.append({"role": "user", "content": msg.content})
            elif isinstance(msg, AssistantMessage):
                if not msg.tool_calls:
                    # The API rejects empty assistant content.
                    if msg.content:
                        formatted.append({"role": "assistant", "content": msg.content})
                    continue
                blocks: list[dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append(
                        {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                    )
                formatted.append({"role": "assistant", "content": blocks})
            elif isinstance(msg, ToolResultMessage):
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_use_id,
                    "content": msg.content,
                    "is_error": msg.is_error,
                }
                last = formatted[-1] if formatted else None
                if (
                    last is not None
                    and last["role"] == "user"
                    and isinstance(last["content"], list)
                    and all(b.get("type") == "tool_result" for b in last["content"])
                ):
                    last["content"].append(block)
                else:
                    formatted.append({"role": "user", "content": [block]})
        return formatted

    def capabilities(self) -> ModelCapabilities:
        p = self._profile
        return ModelCapabilities(
            supports_streaming=True,
            supports_tools=self._resolve_flag(p.supports_tools, True),
            supports_vision=self._resolve_flag(p.supports_vision, True),
            supports_thinking=self._resolve_flag(p.supports_thinking, False),
            max_context_length=p.context_length,
            max_output_tokens=p.max_tokens,
            api_type="anthropic",
        )
