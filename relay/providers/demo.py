"""Offline demo adapter.

Used when a profile's provider is ``demo`` or its API key is the literal
string ``demo``. Produces a canned streamed reply without touching the
network, which makes it handy for trying the CLI and for tests.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

from loguru import logger

from relay.config.schema import ModelProfile
from relay.providers.stream import QueryAccumulator
from relay.providers.types import (
    AssistantMessage,
    Message,
    ModelAdapter,
    ModelCapabilities,
    StopReason,
    StreamChunk,
    TokenUsage,
    ToolResultMessage,
    ToolSpec,
    UserMessage,
    ValidationResult,
)

_SENTENCE_SPLIT = re.compile(r"(?<=\. )")


class DemoModelAdapter(ModelAdapter):
    """Canned-response adapter that never fails validation."""

    def __init__(self, profile: ModelProfile | None = None, *, delay: float = 0.0) -> None:
        self._profile = profile or ModelProfile(name="Demo", provider="demo", model_name="demo")
        self._delay = delay

    @property
    def provider_name(self) -> str:
        return "demo"

    def validate(self) -> ValidationResult:
        return ValidationResult.success()

    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(
            supports_streaming=True,
            supports_tools=True,
            supports_vision=False,
            supports_thinking=False,
            max_context_length=8192,
            max_output_tokens=4096,
            api_type="demo",
        )

    def format_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg, UserMessage):
                formatted.append({"role": "user", "content": msg.content})
            elif isinstance(msg, AssistantMessage):
                formatted.append({"role": "assistant", "content": msg.content})
            elif isinstance(msg, ToolResultMessage):
                formatted.append({"role": "user", "content": msg.content})
        return formatted

    def query(
        self,
        messages: Sequence[Message],
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        return self._stream(list(messages), list(tools or ()))

    async def _stream(
        self, messages: list[Message], tools: list[ToolSpec]
    ) -> AsyncIterator[StreamChunk]:
        logger.info("Demo model query: {} message(s)", len(messages))
        acc = QueryAccumulator(self._profile.model_name or "demo")
        user_input = next(
            (m.content for m in reversed(messages) if isinstance(m, UserMessage)), "hello"
        )
        reply = build_demo_reply(user_input, tools)

        thinking = acc.add_thinking("Analyzing your request...")
        if thinking:
            yield thinking
        for sentence in _SENTENCE_SPLIT.split(reply):
            await asyncio.sleep(self._delay)
            chunk = acc.add_text(sentence)
            if chunk:
                yield chunk

        yield acc.set_stop(StopReason.END_TURN, "end_turn")
        yield acc.set_usage(
            TokenUsage(
                input_tokens=sum(_word_count(_content_of(m)) for m in messages),
                output_tokens=_word_count(reply),
            )
        )
        yield acc.complete()


def build_demo_reply(user_input: str, tools: Sequence[ToolSpec] = ()) -> str:
    lowered = user_input.lower()
    lines = ["Hello! I am the relay assistant running in demo mode.", ""]
    if "help" in lowered:
        lines += [
            "I can help you:",
            "1. Write and review code",
            "2. Run shell commands",
            "3. Search and read files",
            "",
            f"Available tools: {len(tools)}",
        ]
    elif "tool" in lowered:
        lines.append("Currently available tools:")
        lines += [f"- {t.name}: {t.description}" for t in tools[:5]]
        if len(tools) > 5:
            lines.append(f"... and {len(tools) - 5} more")
    elif "code" in lowered:
        lines += [
            "When writing code, I suggest:",
            "1. Keep it small and clear",
            "2. Follow the project's conventions",
            "3. Write unit tests",
        ]
    else:
        lines += [
            f'You said: "{user_input}"',
            "",
            "This is a demo response. A configured model would answer here. "
            "Demo mode is meant for trying out the CLI.",
        ]
    return "\n".join(lines)


def _content_of(message: Message) -> str:
    return message.content


def _word_count(text: str) -> int:
    return len(text.split())
