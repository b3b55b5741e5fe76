from relay.tools.base import Tool, ToolExecutionError, ToolRegistry

__all__ = [
    "Tool",
    "ToolExecutionError",
    "ToolRegistry",
]
