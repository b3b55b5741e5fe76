"""Tool abstraction layer: base class and registry.

Tools are supplied by the host application; the turn orchestrator only
sees them through ToolRegistry. The registry exports the catalog as
ToolSpecs for the adapters and dispatches execution calls by name.

Tools can return a plain string, a dict/list, or a Pydantic BaseModel.
Structured returns are serialized to JSON before they reach the model.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel

from relay.providers.types import ToolSpec

ToolResult = str | dict | list | BaseModel | Any


class ToolExecutionError(Exception):
    """A tool could not be found or raised while running."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(message)


def _serialize_result(result: ToolResult) -> str:
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    if isinstance(result, (dict, list)):
        return json.dumps(result, indent=2, default=str)
    return str(result)


class Tool(ABC):
    """Abstract base class for tools offered to the model."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier the model uses to call the tool."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema (type: object) describing accepted parameters."""
        ...

    @abstractmethod
    async def execute(self, params: dict[str, Any]) -> ToolResult:
        """Run the tool and return its result.

        Raising is fine: the registry wraps the failure in a
        ToolExecutionError and the orchestrator reports it to the model as
        an error result.
        """
        ...

    def to_spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, json_schema=self.parameters)


class ToolRegistry:
    """Central registry for tool instances.

    Registration is expected to happen at startup; lookups and execution are
    safe to run concurrently.
    """

    __slots__ = ("_tools",)

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Overwriting existing tool registration: {}", tool.name)
        self._tools[tool.name] = tool
        logger.debug("Registered tool: {}", tool.name)

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            logger.debug("Unregistered tool: {}", name)
            return True
        return False

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def list_tools(self) -> list[ToolSpec]:
        return [tool.to_spec() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> str:
        """Look up a tool by name, run it, and serialize its result.

        Raises ToolExecutionError when the tool is unknown or fails.
        """
        tool = self._tools.get(name)
        if tool is None:
            available = ", ".join(self._tools) or "none"
            raise ToolExecutionError(name, f"Unknown tool '{name}'. Available: {available}")

        try:
            result = await tool.execute(arguments)
        except ToolExecutionError:
            raise
        except Exception as exc:
            logger.error("Unhandled error in tool {}: {}", name, exc)
            raise ToolExecutionError(name, f"{name} failed: {type(exc).__name__}: {exc}") from exc
        return _serialize_result(result)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
