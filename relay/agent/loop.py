"""Turn orchestrator.

The TurnOrchestrator drives one user turn through the cycle of:

  1. Stream the conversation + tool catalog to the resolved model adapter
  2. Surface every canonical chunk to the caller as it arrives
  3. If the round ended with tool calls -> check permissions, execute each
     call in vendor order, append the results -> goto 1
  4. Otherwise append the assistant message, record usage and finish

State machine: IDLE -> STREAMING -> (TOOL_DISPATCH -> STREAMING)* -> COMPLETED,
with FAILED reachable from any state.

The adapter stream is consumed by a pump task feeding a one-slot queue, so
every receive and every tool execution can be raced against a
CancellationToken. A cancelled turn closes the adapter stream (aborting the
HTTP request) and leaves no trace in the conversation history.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, TypeVar

from loguru import logger

from relay.agent.permissions import ToolDeniedError, filter_tool_specs, is_tool_allowed
from relay.agent.registry import AgentDescriptor
from relay.observe.usage import UsageLedger
from relay.providers.exceptions import ConfigError, ProviderError
from relay.providers.selector import ModelSelector
from relay.providers.stream import parse_tool_arguments
from relay.providers.types import (
    AssistantMessage,
    CompleteChunk,
    Message,
    ModelAdapter,
    StopReason,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolResultMessage,
    ToolUseChunk,
    UserMessage,
)
from relay.tools.base import ToolExecutionError, ToolRegistry

T = TypeVar("T")

TurnEvent = StreamChunk | ToolResultMessage


class TurnState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    COMPLETED = "completed"
    FAILED = "failed"


class TurnFailedError(Exception):
    """A turn-fatal error, tagged with the stage and model it happened in."""

    def __init__(self, message: str, *, stage: str, model_name: str = "") -> None:
        self.stage = stage
        self.model_name = model_name
        super().__init__(message)


class TurnCancelledError(Exception):
    """The turn was cancelled before it completed."""

    def __init__(
        self, message: str = "Turn cancelled", *, stage: str = "", model_name: str = ""
    ) -> None:
        self.stage = stage
        self.model_name = model_name
        super().__init__(message)


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class ToolCallDetail:
    """Per-tool-call detail for the turn result."""

    name: str
    tool_use_id: str
    success: bool
    duration_ms: float = 0.0
    output_preview: str = ""


@dataclass(slots=True)
class TurnResult:
    """Complete result of a turn: final text plus accounting."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    rounds: int = 0
    model_name: str = ""
    tool_calls_made: list[str] = field(default_factory=list)
    tool_details: list[ToolCallDetail] = field(default_factory=list)


class _StreamEnd:
    pass


@dataclass(slots=True)
class _StreamFailure:
    error: Exception


_END = _StreamEnd()


async def _pump(stream: AsyncIterator[StreamChunk], queue: asyncio.Queue) -> None:
    """Move chunks from an adapter stream into ``queue`` from a single task."""
    try:
        async for chunk in stream:
            await queue.put(chunk)
    except Exception as exc:
        await queue.put(_StreamFailure(exc))
        return
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
    await queue.put(_END)


class TurnOrchestrator:
    """Runs turns against a model adapter and a tool registry.

    One orchestrator owns one conversation history. Turns on the same
    orchestrator must not overlap; run concurrent turns (a primary turn plus
    sub-agent turns) on separate orchestrators.

    Usage:
        orchestrator = TurnOrchestrator(selector, tool_registry, usage_ledger=ledger)
        async for event in orchestrator.stream("Hello"):
            ...
        result = await orchestrator.run("And again")
    """

    def __init__(
        self,
        selector: ModelSelector,
        tools: ToolRegistry,
        *,
        history: list[Message] | None = None,
        agent: AgentDescriptor | None = None,
        usage_ledger: UsageLedger | None = None,
        pointer: str = "main",
        options: dict[str, Any] | None = None,
        max_tool_rounds: int = 0,
    ) -> None:
        self._selector = selector
        self._tools = tools
        self._history: list[Message] = history if history is not None else []
        self._agent = agent
        self._ledger = usage_ledger
        self._pointer = pointer
        self._options = dict(options or {})
        self._max_tool_rounds = max_tool_rounds
        self._state = TurnState.IDLE
        self._running = False
        self._last_result: TurnResult | None = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> list[Message]:
        return self._history

    @property
    def last_result(self) -> TurnResult | None:
        return self._last_result

    def _set_state(self, state: TurnState) -> None:
        if state is not self._state:
            logger.debug("Turn state: {} -> {}", self._state, state)
            self._state = state

    def _resolve_adapter(self) -> tuple[str, ModelAdapter]:
        if self._agent is not None and self._agent.model:
            model_name = self._agent.model
        else:
            model_name = self._selector.resolve(self._pointer)
        if not model_name:
            raise ConfigError(
                f"No model configured for pointer '{self._pointer}'",
                hint="Set model_pointers in ~/.relay/config.json.",
            )
        adapter = self._selector.get_adapter(model_name)
        if adapter is None:
            raise ConfigError(
                f"No usable adapter for model {model_name}",
                hint="Check that a matching, active model profile exists.",
            )
        check = adapter.validate()
        if not check.valid:
            raise ConfigError(
                f"Model {model_name} is not usable: {check.error_message}",
                hint="Set api_key and model_name on this model profile in ~/.relay/config.json.",
            )
        return model_name, adapter

    async def _race(self, awaitable: Awaitable[T], token: CancellationToken, stage: str) -> T:
        """Await ``awaitable`` unless ``token`` fires first."""
        task = asyncio.ensure_future(awaitable)
        if token.cancelled:
            task.cancel()
            await asyncio.wait({task})
            raise TurnCancelledError(token.reason or "Turn cancelled", stage=stage)

        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()
        task.cancel()
        await asyncio.wait({task})
        raise TurnCancelledError(token.reason or "Turn cancelled", stage=stage)

    async def stream(
        self,
        user_input: str,
        *,
        system_prompt: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[TurnEvent]:
        """Run one turn, yielding chunks and tool results as they happen.

        Raises TurnFailedError on a fatal adapter or registry error and
        TurnCancelledError when ``cancel_token`` fires.
        """
        if self._running:
            raise RuntimeError("A turn is already in progress on this orchestrator")
        self._running = True
        self._last_result = None
        self._state = TurnState.IDLE

        token = cancel_token or CancellationToken()
        start_len = len(self._history)
        model_name = ""
        stage = "resolve"

        try:
            try:
                model_name, adapter = self._resolve_adapter()
            except ConfigError as exc:
                raise TurnFailedError(str(exc), stage=stage) from exc

            catalog = filter_tool_specs(self._agent, self._tools.list_tools())
            prompt = system_prompt or (self._agent.system_prompt if self._agent else "") or None

            self._history.append(UserMessage(content=user_input))
            logger.info(
                "Turn started: model={}, tools={}, history={}",
                model_name,
                len(catalog),
                len(self._history),
            )

            text_parts: list[str] = []
            total_usage = TokenUsage()
            tool_calls_made: list[str] = []
            tool_details: list[ToolCallDetail] = []
            rounds = 0
            tool_rounds = 0

            while True:
                rounds += 1
                stage = "streaming"
                self._set_state(TurnState.STREAMING)

                complete: CompleteChunk | None = None
                stop_reason: StopReason | None = None
                pending: dict[str, ToolUseChunk] = {}

                try:
                    adapter_stream = adapter.query(self._history, prompt, catalog, self._options)
                except ProviderError as exc:
                    raise TurnFailedError(str(exc), stage=stage, model_name=model_name) from exc

                queue: asyncio.Queue = asyncio.Queue(maxsize=1)
                pump = asyncio.create_task(_pump(adapter_stream, queue))
                try:
                    while True:
                        item = await self._race(queue.get(), token, stage)
                        if item is _END:
                            break
                        if isinstance(item, _StreamFailure):
                            if isinstance(item.error, ProviderError):
                                raise TurnFailedError(
                                    str(item.error), stage=stage, model_name=model_name
                                ) from item.error
                            raise item.error

                        if isinstance(item, ToolUseChunk):
                            pending[item.id] = item
                        elif isinstance(item, CompleteChunk):
                            complete = item
                            stop_reason = item.message.stop_reason or stop_reason
                            total_usage = total_usage + item.usage
                            if self._ledger is not None:
                                self._ledger.record(item.model_name or model_name, item.usage)
                        yield item
                finally:
                    if not pump.done():
                        pump.cancel()
                        await asyncio.wait({pump})

                if complete is None:
                    raise TurnFailedError(
                        f"Adapter stream for {model_name} ended without a completion",
                        stage=stage,
                        model_name=model_name,
                    )

                if not pending:
                    self._history.append(complete.message)
                    text_parts.append(complete.message.content)
                    break

                if stop_reason is not StopReason.TOOL_USE:
                    logger.info(
                        "Dispatching {} tool call(s) although stop reason was {}",
                        len(pending),
                        stop_reason,
                    )

                calls = [
                    ToolCall(
                        id=c.id, name=c.name, arguments=parse_tool_arguments(c.arguments_so_far)
                    )
                    for c in pending.values()
                ]
                self._history.append(replace(complete.message, tool_calls=tuple(calls)))
                text_parts.append(complete.message.content)

                stage = "tool_dispatch"
                self._set_state(TurnState.TOOL_DISPATCH)
                tool_rounds += 1

                if self._max_tool_rounds and tool_rounds > self._max_tool_rounds:
                    for call in calls:
                        result = ToolResultMessage(
                            tool_use_id=call.id,
                            content=f"Error: tool round limit ({self._max_tool_rounds}) reached",
                            is_error=True,
                            tool_name=call.name,
                        )
                        self._history.append(result)
                        yield result
                    raise TurnFailedError(
                        f"Exceeded the maximum of {self._max_tool_rounds} tool round(s)",
                        stage=stage,
                        model_name=model_name,
                    )

                for index, call in enumerate(calls):
                    started = time.perf_counter()
                    try:
                        result = await self._dispatch(call, token, stage)
                    except (TurnCancelledError, asyncio.CancelledError):
                        raise
                    except Exception as exc:
                        logger.error("Tool registry failed on {}: {}", call.name, exc)
                        for unresolved in calls[index:]:
                            self._history.append(
                                ToolResultMessage(
                                    tool_use_id=unresolved.id,
                                    content=f"Error: tool dispatch aborted: {exc}",
                                    is_error=True,
                                    tool_name=unresolved.name,
                                )
                            )
                        raise TurnFailedError(
                            f"Tool registry error while running {call.name}: {exc}",
                            stage=stage,
                            model_name=model_name,
                        ) from exc

                    elapsed = (time.perf_counter() - started) * 1000
                    self._history.append(result)
                    tool_calls_made.append(call.name)
                    tool_details.append(
                        ToolCallDetail(
                            name=call.name,
                            tool_use_id=call.id,
                            success=not result.is_error,
                            duration_ms=elapsed,
                            output_preview=result.content[:120],
                        )
                    )
                    yield result

            self._last_result = TurnResult(
                text="".join(text_parts),
                usage=total_usage,
                rounds=rounds,
                model_name=model_name,
                tool_calls_made=tool_calls_made,
                tool_details=tool_details,
            )
            self._set_state(TurnState.COMPLETED)
            logger.info(
                "Turn finished after {} round(s) ({} tool calls)", rounds, len(tool_calls_made)
            )

        except TurnCancelledError as exc:
            exc.model_name = exc.model_name or model_name
            self._abandon(start_len, stage)
            raise
        except asyncio.CancelledError:
            self._abandon(start_len, stage)
            raise
        except TurnFailedError as exc:
            self._drop_unanswered(start_len)
            self._set_state(TurnState.FAILED)
            logger.error("Turn failed during {} ({}): {}", exc.stage, exc.model_name or "-", exc)
            raise
        except Exception:
            self._drop_unanswered(start_len)
            self._set_state(TurnState.FAILED)
            raise
        finally:
            if self._state not in (TurnState.COMPLETED, TurnState.FAILED):
                # The caller stopped iterating before the turn finished.
                self._abandon(start_len, stage)
            self._running = False

    def _abandon(self, start_len: int, stage: str) -> None:
        del self._history[start_len:]
        self._set_state(TurnState.FAILED)
        logger.info("Turn cancelled during {}; history restored", stage)

    def _drop_unanswered(self, start_len: int) -> None:
        """Roll back a failed turn that produced no AssistantMessage yet."""
        if not any(isinstance(m, AssistantMessage) for m in self._history[start_len:]):
            del self._history[start_len:]

    async def _dispatch(
        self, call: ToolCall, token: CancellationToken, stage: str
    ) -> ToolResultMessage:
        """Run one tool call, converting denials and tool failures into error results."""
        if not is_tool_allowed(self._agent, call.name):
            denied = ToolDeniedError(
                self._agent.agent_type if self._agent else "default", call.name
            )
            logger.warning("{}", denied)
            return ToolResultMessage(
                tool_use_id=call.id,
                content=f"Error: {denied}",
                is_error=True,
                tool_name=call.name,
            )

        logger.info(
            "Executing tool: {}({})",
            call.name,
            ", ".join(f"{k}={v!r}" for k, v in list(call.arguments.items())[:3]),
        )
        try:
            output = await self._race(self._tools.execute(call.name, call.arguments), token, stage)
        except ToolExecutionError as exc:
            return ToolResultMessage(
                tool_use_id=call.id, content=f"Error: {exc}", is_error=True, tool_name=call.name
            )
        return ToolResultMessage(tool_use_id=call.id, content=output, tool_name=call.name)

    async def run(
        self,
        user_input: str,
        *,
        system_prompt: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TurnResult:
        """Drain :meth:`stream` and return the turn's final text and usage."""
        events = self.stream(user_input, system_prompt=system_prompt, cancel_token=cancel_token)
        async for _ in events:
            pass
        if self._last_result is None:
            raise RuntimeError("Turn ended without a result")
        return self._last_result
