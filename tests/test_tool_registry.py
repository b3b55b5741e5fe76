"""Tests for ToolRegistry registration, catalog export, and dispatch."""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import BaseModel

from relay.tools import Tool, ToolExecutionError, ToolRegistry


class _Echo(Tool):
    @property
    def name(self) -> str:
        return "Echo"

    @property
    def description(self) -> str:
        return "Echo the text back."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        }

    async def execute(self, params: dict[str, Any]) -> str:
        return params["text"]


class _Stats(BaseModel):
    files: int
    lines: int


class _Structured(Tool):
    def __init__(self, result: Any) -> None:
        self._result = result

    @property
    def name(self) -> str:
        return "Stats"

    @property
    def description(self) -> str:
        return "Return structured data."

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, params: dict[str, Any]) -> Any:
        return self._result


class TestRegistration:
    def test_register_and_lookup(self):
        registry = ToolRegistry([_Echo()])
        assert "Echo" in registry
        assert len(registry) == 1
        assert registry.names() == ["Echo"]
        assert registry.get("Echo").description == "Echo the text back."
        assert registry.get("Missing") is None

    def test_unregister(self):
        registry = ToolRegistry([_Echo()])
        assert registry.unregister("Echo")
        assert not registry.unregister("Echo")
        assert len(registry) == 0

    def test_reregistering_overwrites(self):
        registry = ToolRegistry([_Echo(), _Echo()])
        assert len(registry) == 1

    def test_list_tools_exports_specs(self):
        specs = ToolRegistry([_Echo()]).list_tools()
        assert len(specs) == 1
        assert specs[0].name == "Echo"
        assert specs[0].json_schema["required"] == ["text"]


class TestExecute:
    @pytest.mark.asyncio
    async def test_string_result(self):
        registry = ToolRegistry([_Echo()])
        assert await registry.execute("Echo", {"text": "hi"}) == "hi"

    @pytest.mark.asyncio
    async def test_dict_result_serialized(self):
        registry = ToolRegistry([_Structured({"ok": True})])
        assert await registry.execute("Stats", {}) == '{\n  "ok": true\n}'

    @pytest.mark.asyncio
    async def test_model_result_serialized(self):
        registry = ToolRegistry([_Structured(_Stats(files=2, lines=40))])
        output = await registry.execute("Stats", {})
        assert _Stats.model_validate_json(output) == _Stats(files=2, lines=40)

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        registry = ToolRegistry([_Echo()])
        with pytest.raises(ToolExecutionError) as exc_info:
            await registry.execute("Nope", {})
        assert exc_info.value.tool_name == "Nope"
        assert "Available: Echo" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_tool_exception_wrapped(self):
        registry = ToolRegistry([_Echo()])
        with pytest.raises(ToolExecutionError) as exc_info:
            await registry.execute("Echo", {})
        assert "KeyError" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, KeyError)
