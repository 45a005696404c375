"""ollama-stream CLI: Typer + Rich terminal interface.

Commands: generate, chat, embed, version, health, models.
Classified errors print their kind and a retry hint, then exit with 1.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import replace
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import Configuration, normalize_host
from .llm.client import OllamaClient
from .llm.exceptions import ModelNotFoundError, OllamaError, RateLimitError
from .llm.models import ChatMessage, ChatRequest, EmbedRequest, GenerateRequest
from .llm.streaming.models import AggregateResult
from .logging_utils import operation_context, setup_logging

T = TypeVar("T")

console = Console()

CHAT_EXIT_COMMANDS = {"/bye", "/exit", "/quit"}

# ── App and sub-apps ─────────────────────────────────────────────

app = typer.Typer(
    name="ollama-stream",
    help="Streaming client for an Ollama server.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

models_app = typer.Typer(
    name="models",
    help="Manage models on the server.",
    no_args_is_help=True,
)
app.add_typer(models_app, name="models")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"ollama-stream {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    host: str | None = typer.Option(
        None, "--host", "-H",
        help="Server address (overrides OLLAMA_HOST and config.yaml).",
    ),
    log_level: str | None = typer.Option(
        None, "--log-level",
        help="Log level (defaults to logging.level in config.yaml).",
    ),
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show client version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Talk to an Ollama server: generate, chat, embed and manage models."""
    configuration = _load_configuration()
    level = log_level or configuration.get_logging_config().get("level", "WARNING")
    try:
        setup_logging(level)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from None
    ctx.obj = {"configuration": configuration, "host": host}


# ── Helpers ──────────────────────────────────────────────────────


def _load_configuration() -> Configuration:
    """Load configuration, exit on error."""
    try:
        return Configuration()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


def _make_client(configuration: Configuration, host: str | None) -> OllamaClient:
    """Build a client from configuration, honouring ``--host``."""
    config = configuration.get_client_config()
    if host:
        config = replace(config, base_url=normalize_host(host))
    return OllamaClient(config)


def _client(ctx: typer.Context) -> OllamaClient:
    try:
        return _make_client(ctx.obj["configuration"], ctx.obj["host"])
    except ValueError as e:
        console.print(f"[red]Error in client config:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


def _default_model(ctx: typer.Context, key: str) -> str:
    try:
        return ctx.obj["configuration"].get_defaults()[key]
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from None


def _print_error(error: OllamaError) -> None:
    console.print(f"[red]Error ({error.kind.value}):[/red] {escape(error.message)}")
    if isinstance(error, ModelNotFoundError) and error.model:
        console.print(
            f"[dim]Pull it first: ollama-stream models pull {escape(error.model)}[/dim]"
        )
    elif isinstance(error, RateLimitError) and error.retry_after is not None:
        console.print(f"[dim]Retry after {error.retry_after:g}s.[/dim]")
    elif error.retryable:
        console.print("[dim]This error is transient; retrying may succeed.[/dim]")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a client coroutine, turning classified errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except OllamaError as e:
        _print_error(e)
        raise typer.Exit(1) from None


def _print_text(text: str, *, end: str = "\n") -> None:
    console.print(text, end=end, markup=False, highlight=False, soft_wrap=True)


def _print_stats(result: AggregateResult) -> None:
    metrics = result.metrics
    if metrics is None:
        console.print("[dim]No statistics reported.[/dim]")
        return

    table = Table(title="Generation Statistics", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")

    def fmt(value: float | int | None, unit: str = "") -> str:
        if value is None:
            return "-"
        if isinstance(value, float):
            return f"{value:.2f}{unit}"
        return f"{value:,}{unit}"

    table.add_row("Prompt tokens", fmt(metrics.prompt_eval_count))
    table.add_row("Generated tokens", fmt(metrics.eval_count))
    table.add_row("Tokens/s", fmt(metrics.tokens_per_second))
    table.add_row("Prompt tokens/s", fmt(metrics.prompt_tokens_per_second))
    table.add_row("Load time", fmt(metrics.load_seconds, "s"))
    table.add_row("Total time", fmt(metrics.total_seconds, "s"))
    console.print(table)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


# ── Generation ───────────────────────────────────────────────────


@app.command()
def generate(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Prompt text"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model name"),
    system: str | None = typer.Option(None, "--system", help="System prompt"),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Stream tokens"),
    temperature: float | None = typer.Option(None, "--temperature", "-t"),
    max_tokens: int | None = typer.Option(None, "--max-tokens", "-n"),
    stats: bool = typer.Option(False, "--stats", help="Show generation statistics"),
) -> None:
    """Generate a completion for PROMPT."""
    request = GenerateRequest(
        model=model or _default_model(ctx, "generate_model"),
        prompt=prompt,
        system=system,
    )
    if temperature is not None:
        request.temperature(temperature)
    if max_tokens is not None:
        request.max_tokens(max_tokens)
    client = _client(ctx)

    async def _generate() -> AggregateResult:
        async with client:
            if not stream:
                result = await client.generate(request)
                _print_text(result.content)
                return result
            response = await client.generate_stream(request)
            async with response:
                async for delta in response.deltas():
                    if delta.content:
                        _print_text(delta.content, end="")
                result = response.result()
            _print_text("")
            return result

    result = _run(_generate())
    if stats:
        _print_stats(result)


@app.command()
def chat(
    ctx: typer.Context,
    model: str | None = typer.Option(None, "--model", "-m", help="Model name"),
    system: str | None = typer.Option(None, "--system", help="System prompt"),
) -> None:
    """Interactive streamed chat. Type /bye to leave."""
    request = ChatRequest(model=model or _default_model(ctx, "chat_model"))
    if system:
        request.add_system_message(system)
    client = _client(ctx)

    async def _chat() -> None:
        async with client:
            while True:
                try:
                    line = await asyncio.to_thread(console.input, "[bold green]>>> [/]")
                except EOFError:
                    return
                if line.strip() in CHAT_EXIT_COMMANDS:
                    return
                if not line.strip():
                    continue
                request.add_user_message(line)
                async with operation_context(
                    "chat_turn", context={"model": request.model}
                ):
                    response = await client.chat_stream(request)
                    async with response:
                        async for delta in response.deltas():
                            if delta.content:
                                _print_text(delta.content, end="")
                        result = response.result()
                _print_text("")
                request.add_message(result.message or ChatMessage.assistant(""))

    _run(_chat())


@app.command()
def embed(
    ctx: typer.Context,
    texts: list[str] = typer.Argument(..., help="One or more texts to embed"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model name"),
) -> None:
    """Embed TEXTS and print vector sizes."""
    request = EmbedRequest(
        model=model or _default_model(ctx, "embed_model"),
        input=texts if len(texts) > 1 else texts[0],
    )
    client = _client(ctx)

    async def _embed() -> AggregateResult:
        async with client:
            return await client.embed(request)

    result = _run(_embed())
    table = Table(title=f"Embeddings ({result.model or request.model})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Input")
    table.add_column("Dims", justify="right")
    table.add_column("Head")
    for index, (text, vector) in enumerate(
        zip(request.inputs_as_list(), result.embeddings, strict=False)
    ):
        head = ", ".join(f"{v:.4f}" for v in vector[:4])
        table.add_row(str(index), escape(text[:40]), str(len(vector)), head)
    console.print(table)


# ── Server ───────────────────────────────────────────────────────


@app.command()
def version(ctx: typer.Context) -> None:
    """Show the server version."""
    client = _client(ctx)

    async def _version() -> str:
        async with client:
            return await client.version()

    console.print(f"Server version: [bold]{escape(_run(_version()))}[/bold]")


@app.command()
def health(ctx: typer.Context) -> None:
    """Check that the server is reachable."""
    client = _client(ctx)

    async def _health() -> bool:
        async with client:
            return await client.health()

    if _run(_health()):
        console.print(f"[green]✓[/green] {escape(client.config.base_url)} is up")
        return
    console.print(f"[red]✗[/red] {escape(client.config.base_url)} is not reachable")
    raise typer.Exit(1)


# ── Models ───────────────────────────────────────────────────────


@models_app.command("list")
def models_list(ctx: typer.Context) -> None:
    """Show locally available models."""
    client = _client(ctx)

    async def _list():
        async with client:
            return await client.list_models()

    models = _run(_list()).models
    table = Table(title="Local Models")
    table.add_column("Name", style="bold cyan")
    table.add_column("Size", justify="right")
    table.add_column("Family", style="dim")
    table.add_column("Params", justify="right")
    table.add_column("Quant", justify="right")
    for entry in sorted(models, key=lambda m: m.name):
        details = entry.details
        table.add_row(
            entry.name,
            _format_size(entry.size),
            details.family if details else "",
            details.parameter_size if details else "",
            details.quantization_level if details else "",
        )
    console.print(table)
    console.print(f"\n[dim]{len(models)} models[/dim]")


@models_app.command("show")
def models_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Model name"),
) -> None:
    """Show details for one model."""
    client = _client(ctx)

    async def _show():
        async with client:
            return await client.show_model(name)

    info = _run(_show())
    table = Table(title=f"Model: {name}", show_header=False, show_lines=True)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    if info.details:
        table.add_row("Family", info.details.family)
        table.add_row("Parameters", info.details.parameter_size)
        table.add_row("Quantization", info.details.quantization_level)
        table.add_row("Format", info.details.format)
    if info.capabilities:
        table.add_row("Capabilities", ", ".join(info.capabilities))
    if info.parameters:
        table.add_row("Runtime parameters", escape(info.parameters))
    if info.license:
        table.add_row("License", escape(info.license.splitlines()[0]))
    console.print(table)


@models_app.command("pull")
def models_pull(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Model name"),
    insecure: bool = typer.Option(False, "--insecure", help="Allow insecure registries"),
) -> None:
    """Download a model, showing progress."""
    client = _client(ctx)

    async def _pull() -> AggregateResult:
        async with client:
            response = await client.pull_model_stream(name, insecure=insecure)
            async with response:
                last_status = None
                async for chunk in response:
                    percentage = chunk.percentage
                    if percentage is not None:
                        console.print(
                            f"{escape(chunk.status)} {percentage:5.1f}%", end="\r"
                        )
                    elif chunk.status != last_status:
                        console.print(escape(chunk.status))
                    last_status = chunk.status
                return response.result()

    result = _run(_pull())
    if result.done:
        console.print(f"[green]✓[/green] Pulled {escape(name)}")
        return
    console.print(f"[yellow]Pull of {escape(name)} ended without success status[/yellow]")
    raise typer.Exit(1)


@models_app.command("copy")
def models_copy(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Existing model name"),
    destination: str = typer.Argument(..., help="New model name"),
) -> None:
    """Copy a model under a new name."""
    client = _client(ctx)

    async def _copy() -> None:
        async with client:
            await client.copy_model(source, destination)

    _run(_copy())
    console.print(f"[green]✓[/green] Copied {escape(source)} → {escape(destination)}")


@models_app.command("delete")
def models_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Model name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a model from the server."""
    if not yes and not typer.confirm(f"Delete model '{name}'?"):
        raise typer.Exit()
    client = _client(ctx)

    async def _delete() -> None:
        async with client:
            await client.delete_model(name)

    _run(_delete())
    console.print(f"[green]✓[/green] Deleted {escape(name)}")


@models_app.command("running")
def models_running(ctx: typer.Context) -> None:
    """Show models currently loaded in memory."""
    client = _client(ctx)

    async def _running():
        async with client:
            return await client.list_running_models()

    models = _run(_running()).models
    if not models:
        console.print("[dim]No models loaded.[/dim]")
        return
    table = Table(title="Running Models")
    table.add_column("Name", style="bold cyan")
    table.add_column("Size", justify="right")
    table.add_column("VRAM", justify="right")
    table.add_column("Expires", style="dim")
    for entry in models:
        table.add_row(
            entry.name,
            _format_size(entry.size),
            _format_size(entry.size_vram) if entry.size_vram is not None else "-",
            entry.expires_at or "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
