"""Core LLM types shared across all protocol adapters.

These dataclasses define the canonical vocabulary that relay uses.
Adapters translate between this format and their vendor's wire format;
the turn orchestrator only ever sees these types.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class StopReason(StrEnum):
    """Canonical reason a model stopped generating."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token consumption for a single model query."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
        )


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A single, fully assembled tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """One entry of the tool catalog offered to the model."""

    name: str
    description: str
    json_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


# ── Conversation messages ──


@dataclass(frozen=True, slots=True)
class UserMessage:
    content: str


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    """A completed assistant response.

    ``tool_calls`` is non-empty when the response ended a tool round; the
    matching ToolResultMessages must follow it in the history.
    """

    content: str = ""
    stop_reason: StopReason | None = None
    raw_stop_reason: str | None = None
    thinking_content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True, slots=True)
class ToolResultMessage:
    """Result of one tool call, role-equivalent to a user turn."""

    tool_use_id: str
    content: str
    is_error: bool = False
    tool_name: str = ""


Message = UserMessage | AssistantMessage | ToolResultMessage


# ── Streaming chunks ──


@dataclass(frozen=True, slots=True)
class TextChunk:
    content: str


@dataclass(frozen=True, slots=True)
class ThinkingChunk:
    content: str


@dataclass(frozen=True, slots=True)
class ToolUseChunk:
    """A tool request; ``arguments_so_far`` is the argument JSON text received so far."""

    id: str
    name: str
    arguments_so_far: str = ""


@dataclass(frozen=True, slots=True)
class StopChunk:
    reason: StopReason
    raw_reason: str = ""


@dataclass(frozen=True, slots=True)
class UsageChunk:
    usage: TokenUsage


@dataclass(frozen=True, slots=True)
class CompleteChunk:
    """Terminal chunk of a query carrying the fully assembled message."""

    message: AssistantMessage
    usage: TokenUsage = field(default_factory=TokenUsage)
    model_name: str = ""


StreamChunk = TextChunk | ThinkingChunk | ToolUseChunk | StopChunk | UsageChunk | CompleteChunk


@dataclass(frozen=True, slots=True)
class ModelCapabilities:
    """What a resolved model can do, as seen by callers."""

    supports_streaming: bool = True
    supports_tools: bool = True
    supports_vision: bool = False
    supports_thinking: bool = False
    max_context_length: int = 0
    max_output_tokens: int = 0
    api_type: str = ""


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    error_message: str = ""
    error_code: int | None = None

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(valid=True)

    @classmethod
    def failure(cls, error_message: str, error_code: int | None = None) -> ValidationResult:
        return cls(valid=False, error_message=error_message, error_code=error_code)


class ModelAdapter(ABC):
    """Abstract base class for protocol adapters.

    Each adapter translates relay's canonical messages into one vendor's
    envelope and that vendor's stream back into StreamChunks. Instances are
    cached and shared between concurrent queries, so they must not keep any
    per-query state on ``self``.
    """

    @abstractmethod
    def query(
        self,
        messages: Sequence[Message],
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Start one streaming query.

        Raises ConfigError immediately when the profile fails local
        validation; otherwise returns an async iterator that ends after
        exactly one CompleteChunk or raises.
        """
        ...

    @abstractmethod
    def validate(self) -> ValidationResult:
        """Check credential and model presence. Never touches the network."""
        ...

    @abstractmethod
    def capabilities(self) -> ModelCapabilities:
        ...

    @abstractmethod
    def format_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        """Serialize history into the vendor's message envelope."""
        ...

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    async def close(self) -> None:
        """Release transport resources. Safe to call more than once."""
