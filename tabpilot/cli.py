import asyncio
import signal
from contextlib import suppress

import click
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from tabpilot.config import get_config
from tabpilot.constants import TOOL_INPUT_PREVIEW_LIMIT, TOOL_RESULT_PREVIEW_LIMIT
from tabpilot.core.approval import AutoApprove
from tabpilot.core.events import SessionCallbacks, SessionOutcome
from tabpilot.core.state import SessionStatus
from tabpilot.errors import ParseError, ProviderError
from tabpilot.llm.models import get_models
from tabpilot.memory.domain import normalize_domain
from tabpilot.memory.formatting import format_memory
from tabpilot.memory.store import MemoryStore
from tabpilot.runtime import Runtime
from tabpilot.tools.core.base import ToolResult

console = Console()


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class ConsoleApproval:
    async def request_approval(self, tool_name: str, tool_input: str, reason: str) -> bool:
        console.print()
        console.print(f"[yellow]Approval needed:[/yellow] {reason}")
        console.print(f"  {tool_name} {_preview(tool_input, TOOL_INPUT_PREVIEW_LIMIT)}", style="bold", markup=False)
        return await asyncio.to_thread(Confirm.ask, "Allow this action?", console=console, default=False)


class ConsolePrinter:
    """Streams a run to the terminal. Segments are only printed when nothing was streamed for them."""

    def __init__(self):
        self._streamed = False

    async def on_chunk(self, text: str) -> None:
        self._streamed = True
        console.print(text, end="", markup=False, highlight=False)

    async def on_segment(self, text: str) -> None:
        if self._streamed:
            console.print()
        elif text.strip():
            console.print(text, markup=False, highlight=False)
        self._streamed = False

    async def on_reasoning(self, text: str) -> None:
        console.print(text, end="", style="dim italic", markup=False, highlight=False)

    async def on_tool_start(self, name: str, tool_input: str) -> None:
        console.print(f"→ {name} {_preview(tool_input, TOOL_INPUT_PREVIEW_LIMIT)}", style="cyan", markup=False)

    async def on_tool_end(self, result: ToolResult) -> None:
        style = "red" if result.is_error else "dim"
        console.print(_preview(result.text, TOOL_RESULT_PREVIEW_LIMIT), style=style, markup=False)

    async def on_fallback(self, error: ProviderError) -> None:
        console.print(f"\nStreaming failed ({error}); retrying without streaming.", style="yellow", markup=False)

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_chunk=self.on_chunk,
            on_segment=self.on_segment,
            on_reasoning=self.on_reasoning,
            on_tool_start=self.on_tool_start,
            on_tool_end=self.on_tool_end,
            on_fallback=self.on_fallback,
        )


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """tabpilot - browser automation through an LLM tool loop"""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = get_config()
    except ValueError as e:
        ctx.obj["config_error"] = str(e)

    if ctx.invoked_subcommand is None:
        console.print("[bold]tabpilot[/bold] - browser automation through an LLM tool loop\n")
        console.print('Run [cyan]tabpilot run "your task"[/cyan] to execute a prompt.')
        console.print("\nUse [cyan]tabpilot --help[/cyan] for all commands.")


def _require_config(ctx):
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command()
@click.pass_context
def status(ctx):
    """Show configuration and available models."""
    config = _require_config(ctx)

    console.print("[bold]tabpilot status[/bold]")
    console.print()
    console.print(f"Data dir: [cyan]{config.db_dir}[/cyan]")
    console.print(f"Model: {config.model}")
    console.print(f"Streaming: {config.streaming}")
    console.print(f"Max steps: {config.max_steps}")
    console.print(f"Context budget: {config.context_budget} tokens")
    console.print(f"Memory: {'enabled' if config.memory else 'disabled'}")
    console.print()

    keys = {
        "ANTHROPIC_API_KEY": config.anthropic_api_key,
        "OPENAI_API_KEY": config.openai_api_key,
        "GEMINI_API_KEY": config.gemini_api_key,
    }
    for name, value in keys.items():
        mark = "[green]set[/green]" if value else "[dim]not set[/dim]"
        console.print(f"  {name}: {mark}")
    console.print()

    table = Table("Model", "Provider", "Context", "$/M in", "$/M out")
    for model in get_models().values():
        table.add_row(
            model.id,
            model.provider.value,
            f"{model.max_context_tokens:,}",
            f"{model.price_in:g}",
            f"{model.price_out:g}",
        )
    console.print(table)


@main.command()
@click.argument("prompt")
@click.option("--model", default=None, help="Model id (defaults to the configured model)")
@click.option("--no-stream", is_flag=True, help="Use non-streaming provider calls")
@click.option("--domain", default=None, help="Website domain, used for memories")
@click.option("--yes", "-y", is_flag=True, help="Approve every sensitive action without asking")
@click.option("--reflect", is_flag=True, help="Save reusable patterns for --domain after the run")
@click.pass_context
def run(ctx, prompt: str, model: str | None, no_stream: bool, domain: str | None, yes: bool, reflect: bool):
    """Run one prompt through the tool loop."""
    config = _require_config(ctx)
    if reflect and not domain:
        raise click.UsageError("--reflect needs --domain")

    outcome = asyncio.run(
        _run(config, prompt, model=model, streaming=not no_stream, domain=domain, auto_approve=yes, reflect=reflect)
    )
    if outcome.status is SessionStatus.FATAL:
        raise SystemExit(1)


async def _run(
    config,
    prompt: str,
    *,
    model: str | None,
    streaming: bool,
    domain: str | None,
    auto_approve: bool,
    reflect: bool,
) -> SessionOutcome:
    runtime = Runtime(config)
    await runtime.connect()

    try:
        approvals = AutoApprove() if auto_approve else ConsoleApproval()
        session = runtime.create_session(model, approvals, streaming=streaming)

        loop = asyncio.get_running_loop()
        with suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, session.cancel)

        console.print(f"Running ({session.provider.model.id}): {prompt}\n", style="dim", markup=False)
        outcome = await session.run(prompt, ConsolePrinter().callbacks(), domain=domain)

        with suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

        _print_outcome(outcome)

        if reflect and outcome.ok:
            await _reflect(runtime, session.messages, domain, model)
        return outcome
    finally:
        await runtime.close()


def _print_outcome(outcome: SessionOutcome) -> None:
    console.print()
    if outcome.status is SessionStatus.FATAL:
        console.print(f"Failed: {outcome.error}", style="red", markup=False)
    elif outcome.status is SessionStatus.CANCELLED:
        console.print("[yellow]Cancelled[/yellow]")

    usage = outcome.usage
    console.print(
        f"[dim]{outcome.steps} steps, {outcome.fallbacks} fallbacks, "
        f"{usage.prompt_tokens:,} in / {usage.completion_tokens:,} out tokens, ${usage.cost:.4f}[/dim]"
    )


async def _reflect(runtime: Runtime, messages: list[dict], domain: str, model: str | None) -> None:
    console.print(f"\n[dim]Reflecting on this run to learn patterns for {normalize_domain(domain)}...[/dim]")
    try:
        records = await runtime.reflector(model).reflect(messages, domain)
    except (ParseError, ProviderError) as e:
        console.print(f"[red]Reflection failed:[/red] {e}")
        return
    for record in records:
        console.print(f"[green]Saved memory {record.id}[/green]")
        console.print(format_memory(record), markup=False)


@main.group()
def memories():
    """Inspect stored memories."""


@memories.command("list")
@click.option("--domain", default=None, help="Only show memories for this domain")
@click.option("--limit", default=50, help="Maximum number of memories")
@click.pass_context
def list_memories(ctx, domain: str | None, limit: int):
    """List stored memories, newest first."""
    config = _require_config(ctx)
    asyncio.run(_list_memories(config, domain, limit))


async def _list_memories(config, domain: str | None, limit: int) -> None:
    store = MemoryStore(config.memory_db_path)
    await store.connect()
    try:
        records = await store.query_by_domain(domain) if domain else await store.list_all(limit)
    finally:
        await store.close()

    if not records:
        console.print("[dim]No memories stored.[/dim]")
        return

    table = Table("ID", "Domain", "Task", "Steps", "Created")
    for r in records[:limit]:
        table.add_row(
            str(r.id),
            r.domain,
            r.task_description,
            "\n".join(r.tool_sequence),
            r.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@memories.command("clear")
@click.confirmation_option(prompt="Delete every stored memory?")
@click.pass_context
def clear_memories(ctx):
    """Delete every stored memory."""
    config = _require_config(ctx)
    count = asyncio.run(_clear_memories(config))
    console.print(f"Deleted {count} memories.")


async def _clear_memories(config) -> int:
    store = MemoryStore(config.memory_db_path)
    await store.connect()
    try:
        return await store.clear()
    finally:
        await store.close()


if __name__ == "__main__":
    main()
