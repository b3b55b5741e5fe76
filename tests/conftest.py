"""Shared test fixtures for the relay test suite.

The _isolate_relay_config fixture (autouse) prevents RelayConfig from reading
the user's real ~/.relay/config.json during tests.

The orchestrator fixtures build a TurnOrchestrator around a ScriptedAdapter,
a fake ModelAdapter that replays pre-built chunk sequences, one per query.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from pydantic import SecretStr

from relay.agent.loop import TurnOrchestrator
from relay.agent.registry import AgentDescriptor
from relay.config.schema import ModelPointers, ModelProfile, RelayConfig
from relay.config.store import ConfigProfileStore
from relay.observe.usage import UsageLedger
from relay.providers.selector import ModelSelector
from relay.providers.stream import QueryAccumulator
from relay.providers.types import (
    Message,
    ModelAdapter,
    ModelCapabilities,
    StopReason,
    StreamChunk,
    TokenUsage,
    ToolSpec,
    ValidationResult,
)
from relay.tools.base import Tool, ToolRegistry

FAKE_MODEL = "fake-model"


@pytest.fixture(autouse=True)
def _isolate_relay_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Point RelayConfig's json_file at an empty temp file for every test."""
    empty_config = tmp_path / "relay_test_config.json"
    empty_config.write_text("{}", encoding="utf-8")
    monkeypatch.setitem(RelayConfig.model_config, "json_file", empty_config)


# ---------------------------------------------------------------------------
# Scripted model adapter
# ---------------------------------------------------------------------------


def text_round(
    *parts: str,
    usage: TokenUsage | None = None,
    model_name: str = FAKE_MODEL,
    stop: StopReason = StopReason.END_TURN,
) -> list[StreamChunk]:
    """Chunks for a round that streams ``parts`` and ends normally."""
    acc = QueryAccumulator(model_name)
    chunks: list[StreamChunk] = [c for c in (acc.add_text(p) for p in parts) if c]
    chunks.append(acc.set_stop(stop, stop.value))
    chunks.append(acc.set_usage(usage or TokenUsage(input_tokens=10, output_tokens=5)))
    chunks.append(acc.complete())
    return chunks


def tool_round(
    *calls: tuple[str, str, str],
    text: str = "",
    usage: TokenUsage | None = None,
    model_name: str = FAKE_MODEL,
    stop: StopReason = StopReason.TOOL_USE,
) -> list[StreamChunk]:
    """Chunks for a round requesting ``calls`` given as (id, name, arguments JSON)."""
    acc = QueryAccumulator(model_name)
    chunks: list[StreamChunk] = []
    if text:
        chunks.append(acc.add_text(text))
    for call_id, name, arguments in calls:
        acc.start_tool(call_id, call_id, name)
        acc.append_tool_arguments(call_id, arguments)
        chunks.append(acc.close_tool(call_id))
    chunks.append(acc.set_stop(stop, stop.value))
    chunks.append(acc.set_usage(usage or TokenUsage(input_tokens=20, output_tokens=8)))
    chunks.append(acc.complete())
    return chunks


class ScriptedAdapter(ModelAdapter):
    """Replays one scripted chunk list per query.

    A script item that is an Exception is raised instead of yielded.
    """

    def __init__(self, rounds: list[list[Any]], *, delay: float = 0.0) -> None:
        self.rounds = list(rounds)
        self.delay = delay
        self.calls: list[list[Message]] = []
        self.system_prompts: list[str | None] = []
        self.tool_names: list[list[str]] = []
        self.options: list[dict[str, Any]] = []
        self.stream_cancelled = False
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "fake"

    def validate(self) -> ValidationResult:
        return ValidationResult.success()

    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(api_type="fake")

    def format_messages(self, messages):
        return [{"type": type(m).__name__} for m in messages]

    def query(self, messages, system_prompt=None, tools=None, options=None):
        self.calls.append(list(messages))
        self.system_prompts.append(system_prompt)
        self.tool_names.append([t.name for t in tools or ()])
        self.options.append(dict(options or {}))
        script = self.rounds.pop(0)
        return self._stream(script)

    async def _stream(self, script: list[Any]):
        try:
            for item in script:
                await asyncio.sleep(self.delay)
                if isinstance(item, Exception):
                    raise item
                yield item
        except asyncio.CancelledError:
            self.stream_cancelled = True
            raise

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def rounds() -> SimpleNamespace:
    return SimpleNamespace(text=text_round, tool=tool_round)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class RecordingTool(Tool):
    """Tool that records its calls and echoes its arguments back."""

    def __init__(self, name: str, *, delay: float = 0.0, error: Exception | None = None) -> None:
        self._name = name
        self._delay = delay
        self._error = error
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return f"Test tool {self._name}"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"path": {"type": "string"}}}

    async def execute(self, params: dict[str, Any]) -> Any:
        self.calls.append(params)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return {"tool": self._name, "args": params}


@pytest.fixture
def tool_registry() -> ToolRegistry:
    return ToolRegistry(
        [
            RecordingTool("FileRead"),
            RecordingTool("Bash"),
            RecordingTool("Broken", error=RuntimeError("disk on fire")),
            RecordingTool("Sleep", delay=30.0),
        ]
    )


# ---------------------------------------------------------------------------
# Config / selector / orchestrator
# ---------------------------------------------------------------------------


def make_profile(model_name: str = FAKE_MODEL, **overrides: Any) -> ModelProfile:
    fields: dict[str, Any] = {
        "name": model_name,
        "provider": "openai",
        "model_name": model_name,
        "api_key": SecretStr("sk-test"),
    }
    fields.update(overrides)
    return ModelProfile(**fields)


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(
        model_profiles=[make_profile()],
        model_pointers=ModelPointers(main=FAKE_MODEL, task=FAKE_MODEL),
    )


@pytest.fixture
def make_orchestrator(relay_config: RelayConfig, tool_registry: ToolRegistry):
    """Build (orchestrator, adapter, ledger) around a ScriptedAdapter."""

    def _make(
        script: list[list[Any]],
        *,
        agent: AgentDescriptor | None = None,
        delay: float = 0.0,
        **kwargs: Any,
    ) -> tuple[TurnOrchestrator, ScriptedAdapter, UsageLedger]:
        adapter = ScriptedAdapter(script, delay=delay)
        selector = ModelSelector(
            ConfigProfileStore(relay_config),
            adapter_factory=lambda profile, **_: adapter,
        )
        ledger = UsageLedger()
        orchestrator = TurnOrchestrator(
            selector,
            tool_registry,
            agent=agent,
            usage_ledger=ledger,
            **kwargs,
        )
        return orchestrator, adapter, ledger

    return _make


@pytest.fixture
def tool_specs() -> list[ToolSpec]:
    return [
        ToolSpec(name="FileRead", description="Read a file"),
        ToolSpec(name="Bash", description="Run a shell command"),
    ]
