from relay.providers.registry import ProviderRegistry, create_adapter
from relay.providers.selector import ModelSelector
from relay.providers.types import (
    AssistantMessage,
    CompleteChunk,
    Message,
    ModelAdapter,
    ModelCapabilities,
    StopChunk,
    StopReason,
    StreamChunk,
    TextChunk,
    ThinkingChunk,
    TokenUsage,
    ToolCall,
    ToolResultMessage,
    ToolSpec,
    ToolUseChunk,
    UsageChunk,
    UserMessage,
    ValidationResult,
)

__all__ = [
    "AssistantMessage",
    "CompleteChunk",
    "Message",
    "ModelAdapter",
    "ModelCapabilities",
    "ModelSelector",
    "ProviderRegistry",
    "StopChunk",
    "StopReason",
    "StreamChunk",
    "TextChunk",
    "ThinkingChunk",
    "TokenUsage",
    "ToolCall",
    "ToolResultMessage",
    "ToolSpec",
    "ToolUseChunk",
    "UsageChunk",
    "UserMessage",
    "ValidationResult",
    "create_adapter",
]
