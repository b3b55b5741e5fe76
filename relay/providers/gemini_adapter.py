"""Gemini contents/parts adapter.

Streams ``models/{model}:streamGenerateContent?alt=sse``. Each SSE payload is
a complete GenerateContentResponse (or occasionally an array of them); there
is no end sentinel, so the CompleteChunk is synthesized when the stream is
exhausted. Function calls arrive whole and carry no id, so ids are
synthesized per query.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

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
    "STOP": StopReason.END_TURN,
    "MAX_TOKENS": StopReason.MAX_TOKENS,
}


def map_finish_reason(raw: str | None, has_tool_calls: bool = False) -> StopReason:
    """Map a Gemini finishReason; STOP after a function call means tool use."""
    reason = _FINISH_REASONS.get(raw or "", StopReason.OTHER)
    if reason is StopReason.END_TURN and has_tool_calls:
        return StopReason.TOOL_USE
    return reason


class GeminiStreamParser(StreamParser):
    """Parser for one streamGenerateContent response."""

    def __init__(self, model_name: str, provider: str = "gemini") -> None:
        super().__init__(model_name, provider)
        self._call_count = 0

    def parse_frame(self, frame: Any) -> list[StreamChunk]:
        if isinstance(frame, list):
            chunks: list[StreamChunk] = []
            for item in frame:
                chunks.extend(self.parse_frame(item))
            return chunks

        acc = self.accumulator
        chunks = []

        candidates = frame.get("candidates") or []
        if candidates:
            candidate = candidates[0]
            for part in (candidate.get("content") or {}).get("parts") or []:
                if "functionCall" in part:
                    call = part["functionCall"]
                    key = f"fc_{self._call_count}"
                    self._call_count += 1
                    acc.start_tool(key, call.get("id") or "", call["name"])
                    acc.append_tool_arguments(
                        key, json.dumps(call.get("args") or {}, ensure_ascii=False)
                    )
                    tool_chunk = acc.close_tool(key)
                    if tool_chunk:
                        chunks.append(tool_chunk)
                elif part.get("thought"):
                    thinking = acc.add_thinking(part.get("text", ""))
                    if thinking:
                        chunks.append(thinking)
                elif "text" in part:
                    text = acc.add_text(part["text"])
                    if text:
                        chunks.append(text)

            raw_reason = candidate.get("finishReason")
            if raw_reason:
                reason = map_finish_reason(raw_reason, acc.has_tool_calls)
                chunks.append(acc.set_stop(reason, raw_reason))

        metadata = frame.get("usageMetadata")
        if metadata:
            usage = TokenUsage(
                input_tokens=as_int(metadata.get("promptTokenCount")),
                output_tokens=as_int(metadata.get("candidatesTokenCount"))
                + as_int(metadata.get("thoughtsTokenCount")),
                cache_read_tokens=as_int(metadata.get("cachedContentTokenCount")),
            )
            # usageMetadata repeats on every frame; only report changes
            if usage != acc.usage:
                chunks.append(acc.set_usage(usage))

        return chunks


class GeminiAdapter(HttpModelAdapter):
    """Adapter for the Gemini generateContent protocol."""

    def _endpoint(self) -> str:
        return f"/v1beta/models/{self.model_name}:streamGenerateContent"

    def _params(self) -> dict[str, str]:
        return {"alt": "sse"}

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Accept": "text/event-stream"}

    def _new_parser(self) -> GeminiStreamParser:
        return GeminiStreamParser(self.model_name, self.provider_name)

    def _build_payload(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[ToolSpec],
        options: dict[str, Any],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"contents": self.format_messages(messages)}
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        generation: dict[str, Any] = {}
        max_tokens = options.get("max_tokens") or self._profile.max_tokens
        if max_tokens:
            generation["maxOutputTokens"] = max_tokens
        if options.get("temperature") is not None:
            generation["temperature"] = options["temperature"]
        if options.get("stop_sequences"):
            generation["stopSequences"] = list(options["stop_sequences"])
        if generation:
            payload["generationConfig"] = generation

        if tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.json_schema}
                        for t in tools
                    ]
                }
            ]
        return payload

    def format_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg, UserMessage):
                last = formatted[-1] if formatted else None
                if last is not None and last["role"] == "user" and all(
                    "text" in p for p in last["parts"]
                ):
                    last["parts"].append({"text": msg.content})
                else:
                    formatted.append({"role": "user", "parts": [{"text": msg.content}]})
            elif isinstance(msg, AssistantMessage):
                if not msg.content and not msg.tool_calls:
                    continue
                parts: list[dict[str, Any]] = []
                if msg.content:
                    parts.append({"text": msg.content})
                for tc in msg.tool_calls:
                    parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})
                formatted.append({"role": "model", "parts": parts})
            elif isinstance(msg, ToolResultMessage):
                key = "error" if msg.is_error else "content"
                part = {
                    "functionResponse": {"name": msg.tool_name, "response": {key: msg.content}}
                }
                last = formatted[-1] if formatted else None
                if last is not None and last["role"] == "user" and all(
                    "functionResponse" in p for p in last["parts"]
                ):
                    last["parts"].append(part)
                else:
                    formatted.append({"role": "user", "parts": [part]})
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
            api_type="gemini",
        )
