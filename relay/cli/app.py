"""relay command line: one-shot turns and model profile management.

One-shot:   relay ask "Explain SSE framing"
Profiles:   relay models
Pointers:   relay pointer main claude-sonnet-4-20250514
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from relay.agent.loop import (
    CancellationToken,
    TurnCancelledError,
    TurnFailedError,
    TurnOrchestrator,
    TurnResult,
)
from relay.agent.registry import AgentRegistry
from relay.config.loader import get_config_path, load_config
from relay.config.schema import POINTER_NAMES, RelayConfig
from relay.config.store import ConfigProfileStore
from relay.logging import setup_logging
from relay.observe.usage import UsageLedger
from relay.providers.exceptions import ProviderError
from relay.providers.selector import ModelSelector
from relay.providers.types import TextChunk, ThinkingChunk
from relay.tools.base import ToolRegistry

app = typer.Typer(
    name="relay",
    help="relay - Stream one assistant turn through any configured LLM backend.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

console = Console()
_err_console = Console(stderr=True)


class _GlobalState:
    """Shared state set by the top-level callback, consumed by subcommands."""

    config_path: Path | None = None
    verbose: bool = False
    quiet: bool = False


state = _GlobalState()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show DEBUG-level logs."),  # noqa: B008
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress logs below WARNING."),  # noqa: B008
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.json."),  # noqa: B008
) -> None:
    """relay - Stream one assistant turn through any configured LLM backend."""
    state.verbose = verbose
    state.quiet = quiet
    state.config_path = config
    setup_logging(verbose=verbose, quiet=quiet)


def _config_path() -> Path:
    return state.config_path or get_config_path()


def _load() -> tuple[RelayConfig, ConfigProfileStore]:
    path = _config_path()
    config = load_config(path)
    return config, ConfigProfileStore(config, path=path)


@app.command(name="ask", help="Run one turn and stream the reply.")
def ask_command(
    message: str = typer.Argument(..., help="The user message."),  # noqa: B008
    pointer: str = typer.Option("", "--pointer", "-p", help="Model pointer to use."),  # noqa: B008
    agent: str = typer.Option("", "--agent", "-a", help="Agent type to run as."),  # noqa: B008
    system: str = typer.Option("", "--system", "-s", help="Override the system prompt."),  # noqa: B008
    show_thinking: bool = typer.Option(
        False, "--thinking", help="Print reasoning output when the model streams it."
    ),  # noqa: B008
) -> None:
    config, store = _load()
    try:
        result = asyncio.run(
            _ask(
                config,
                store,
                message,
                pointer=pointer,
                agent_type=agent,
                system=system,
                show_thinking=show_thinking,
            )
        )
    except TurnCancelledError:
        _err_console.print("\n[yellow]Cancelled.[/yellow]")
        raise typer.Exit(130) from None
    except TurnFailedError as exc:
        _err_console.print(f"\n[bold red]Turn failed ({exc.stage}):[/bold red] {exc}")
        cause = exc.__cause__
        if isinstance(cause, ProviderError) and cause.hint:
            _err_console.print(f"[dim]{cause.hint}[/dim]")
        raise typer.Exit(1) from None
    _print_stats(result)


async def _ask(
    config: RelayConfig,
    store: ConfigProfileStore,
    message: str,
    *,
    pointer: str,
    agent_type: str,
    system: str,
    show_thinking: bool,
) -> TurnResult:
    defaults = config.agents.defaults
    agents = AgentRegistry.from_config(config)
    descriptor = agents.get_agent(agent_type) if agent_type else None
    if agent_type and descriptor is None:
        _err_console.print(
            f"[yellow]Unknown agent '{agent_type}', using the default agent.[/yellow]"
        )

    options = {}
    if defaults.temperature is not None:
        options["temperature"] = defaults.temperature

    selector = ModelSelector(store, http=config.http)
    orchestrator = TurnOrchestrator(
        selector,
        ToolRegistry(),
        agent=descriptor,
        usage_ledger=UsageLedger(),
        pointer=pointer or defaults.pointer,
        options=options,
        max_tool_rounds=defaults.max_tool_rounds,
    )

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, token.cancel)

    try:
        async for event in orchestrator.stream(
            message,
            system_prompt=system or (None if descriptor else defaults.system_prompt),
            cancel_token=token,
        ):
            if isinstance(event, TextChunk):
                console.print(event.content, end="", markup=False, highlight=False, soft_wrap=True)
            elif isinstance(event, ThinkingChunk) and show_thinking:
                console.print(
                    event.content,
                    end="",
                    style="dim",
                    markup=False,
                    highlight=False,
                    soft_wrap=True,
                )
        console.print()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await selector.aclose()

    if orchestrator.last_result is None:
        raise RuntimeError("Turn ended without a result")
    return orchestrator.last_result


def _print_stats(result: TurnResult) -> None:
    usage = result.usage
    parts = [
        result.model_name,
        f"{usage.input_tokens:,} in / {usage.output_tokens:,} out",
        f"{result.rounds} round(s)",
    ]
    if usage.cache_read_tokens or usage.cache_creation_tokens:
        parts.append(
            f"cache {usage.cache_read_tokens:,} read / {usage.cache_creation_tokens:,} new"
        )
    if result.tool_calls_made:
        parts.append(f"tools: {', '.join(result.tool_calls_made)}")
    console.print(f"[dim]({' | '.join(parts)})[/dim]")


@app.command(name="models", help="List configured model profiles and pointers.")
def models_command() -> None:
    config, _ = _load()
    if not config.model_profiles:
        console.print(f"[yellow]No model profiles configured in {_config_path()}[/yellow]")
        return

    pointers = config.model_pointers.model_dump()
    table = Table(title="Model profiles", show_header=True, header_style="bold cyan")
    table.add_column("Name")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Pointers")
    table.add_column("Active")

    for profile in config.model_profiles:
        used_by = [p for p in POINTER_NAMES if pointers.get(p) == profile.model_name]
        table.add_row(
            profile.display_name,
            profile.provider,
            profile.model_name,
            ", ".join(used_by) or "-",
            "[green]yes[/green]" if profile.is_active else "[red]no[/red]",
        )
    console.print(table)


@app.command(name="pointer", help="Point main/task/reasoning/quick at a model.")
def pointer_command(
    name: str = typer.Argument(..., help="Pointer: main, task, reasoning, or quick."),  # noqa: B008
    model: str = typer.Argument(..., help="model_name of a configured profile."),  # noqa: B008
) -> None:
    _, store = _load()
    if store.find_profile(model) is None:
        _err_console.print(f"[red]No model profile named '{model}'.[/red]")
        raise typer.Exit(1)
    if not store.set_pointer(name, model):
        _err_console.print(
            f"[red]Unknown pointer '{name}'. Use one of: {', '.join(POINTER_NAMES)}.[/red]"
        )
        raise typer.Exit(1)
    console.print(f"[green]{name.lower()} -> {model}[/green]")
