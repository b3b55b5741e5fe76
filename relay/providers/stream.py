"""SSE framing and per-query stream accumulation.

Every adapter splits its work in two: a transport loop (shared, in
``base.py``) that turns an HTTP body into SSE data payloads, and a
vendor-specific StreamParser that classifies each payload into canonical
chunks. A parser and its QueryAccumulator are created fresh for every
query, so a cached adapter can serve concurrent queries without their
partial output bleeding into each other.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from relay.providers.exceptions import ProtocolError
from relay.providers.types import (
    AssistantMessage,
    CompleteChunk,
    StopChunk,
    StopReason,
    StreamChunk,
    TextChunk,
    ThinkingChunk,
    TokenUsage,
    ToolCall,
    ToolUseChunk,
    UsageChunk,
)

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the data payload of each Server-Sent Event in ``lines``.

    Multi-line data fields are joined with newlines. ``event:``, ``id:``,
    ``retry:`` and comment lines are ignored. A final event that is not
    followed by a blank line is still emitted.
    """
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name != "data":
            continue
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)

    if data_lines:
        yield "\n".join(data_lines)


def parse_tool_arguments(text: str) -> dict[str, Any]:
    """Parse streamed tool arguments, using json-repair as a fallback."""
    if not text or not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        import json_repair

        parsed = json_repair.loads(text)
        logger.debug("Repaired malformed tool arguments: {!r}", text[:200])
    if not isinstance(parsed, dict):
        logger.warning("Tool arguments are not a JSON object, ignoring: {!r}", text[:200])
        return {}
    return parsed


@dataclass(slots=True)
class _ToolBuffer:
    id: str
    name: str
    argument_parts: list[str] = field(default_factory=list)
    emitted: bool = False

    @property
    def arguments_text(self) -> str:
        return "".join(self.argument_parts)


class QueryAccumulator:
    """Running state of one in-flight query.

    Collects text, thinking and tool-call fragments plus the last seen stop
    reason and usage, and synthesizes the single CompleteChunk at the end.
    """

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._text_parts: list[str] = []
        self._thinking_parts: list[str] = []
        self._tools: dict[Any, _ToolBuffer] = {}
        self.stop_reason: StopReason | None = None
        self.raw_stop_reason: str | None = None
        self.usage: TokenUsage | None = None
        self.completed = False

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self._tools)

    @property
    def is_empty(self) -> bool:
        return not (self._text_parts or self._thinking_parts or self._tools)

    def add_text(self, text: str) -> TextChunk | None:
        if not text:
            return None
        self._text_parts.append(text)
        return TextChunk(content=text)

    def add_thinking(self, text: str) -> ThinkingChunk | None:
        if not text:
            return None
        self._thinking_parts.append(text)
        return ThinkingChunk(content=text)

    def start_tool(self, key: Any, tool_id: str, name: str) -> None:
        buf = self._tools.get(key)
        if buf is None:
            self._tools[key] = _ToolBuffer(id=tool_id or f"call_{len(self._tools)}", name=name)
            return
        if tool_id and not buf.id:
            buf.id = tool_id
        if name and not buf.name:
            buf.name = name

    def append_tool_arguments(self, key: Any, fragment: str) -> None:
        buf = self._tools.get(key)
        if buf is None:
            self.start_tool(key, "", "")
            buf = self._tools[key]
        if fragment:
            buf.argument_parts.append(fragment)

    def close_tool(self, key: Any) -> ToolUseChunk | None:
        """Mark a tool call's arguments as complete and emit its chunk once."""
        buf = self._tools.get(key)
        if buf is None or buf.emitted:
            return None
        buf.emitted = True
        return ToolUseChunk(id=buf.id, name=buf.name, arguments_so_far=buf.arguments_text)

    def close_all_tools(self) -> list[ToolUseChunk]:
        chunks = [self.close_tool(key) for key in list(self._tools)]
        return [c for c in chunks if c is not None]

    def set_stop(self, reason: StopReason, raw_reason: str) -> StopChunk:
        self.stop_reason = reason
        self.raw_stop_reason = raw_reason
        return StopChunk(reason=reason, raw_reason=raw_reason)

    def set_usage(self, usage: TokenUsage) -> UsageChunk:
        self.usage = usage
        return UsageChunk(usage=usage)

    def complete(self) -> CompleteChunk:
        """Build the terminal chunk from everything accumulated so far."""
        tool_calls = tuple(
            ToolCall(id=buf.id, name=buf.name, arguments=parse_tool_arguments(buf.arguments_text))
            for buf in self._tools.values()
        )
        message = AssistantMessage(
            content=self.text,
            stop_reason=self.stop_reason,
            raw_stop_reason=self.raw_stop_reason,
            thinking_content="".join(self._thinking_parts) or None,
            tool_calls=tool_calls,
        )
        self.completed = True
        return CompleteChunk(
            message=message,
            usage=self.usage or TokenUsage(),
            model_name=self.model_name,
        )


class StreamParser(ABC):
    """Classifies one vendor's SSE payloads into canonical chunks.

    Subclasses implement :meth:`parse_frame`. One parser serves exactly one
    query.
    """

    def __init__(self, model_name: str, provider: str) -> None:
        self.provider = provider
        self._acc = QueryAccumulator(model_name)

    @property
    def done(self) -> bool:
        return self._acc.completed

    @property
    def accumulator(self) -> QueryAccumulator:
        return self._acc

    def feed(self, data: str) -> list[StreamChunk]:
        """Parse one SSE data payload. Raises ProtocolError on malformed input."""
        payload = data.strip()
        if not payload or self._acc.completed:
            return []
        if payload == DONE_SENTINEL:
            return self.on_done_sentinel()

        try:
            frame = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ProtocolError(
                f"[{self.provider}] Unparseable stream frame: {payload[:120]!r}",
                provider=self.provider,
            ) from exc

        try:
            return self.parse_frame(frame)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(
                f"[{self.provider}] Unexpected stream frame shape: {payload[:120]!r}",
                provider=self.provider,
            ) from exc

    def on_done_sentinel(self) -> list[StreamChunk]:
        return self.finish()

    def finish(self) -> list[StreamChunk]:
        """Flush pending tool calls and emit the single CompleteChunk."""
        if self._acc.completed:
            return []
        chunks: list[StreamChunk] = list(self._acc.close_all_tools())
        chunks.append(self._acc.complete())
        return chunks

    @abstractmethod
    def parse_frame(self, frame: Any) -> list[StreamChunk]:
        """Map one decoded vendor frame to zero or more canonical chunks."""
        ...


def as_int(value: Any) -> int:
    """Coerce a usage counter that may be missing or null to an int."""
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
