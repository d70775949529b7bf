"""CLI entry point for toolchat."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table

from toolchat.core.broadcast import BroadcastDriver
from toolchat.core.config import load_config
from toolchat.core.engine import Engine
from toolchat.delivery.targets import ConsoleDeliverer
from toolchat.errors import ToolchatError
from toolchat.storage.overrides import JsonOverrideStore
from toolchat.types.config import AppConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _build_engine(ctx: click.Context) -> Engine:
    config: AppConfig = ctx.obj["config"]
    store_path: Path | None = ctx.obj.get("store")
    overrides = JsonOverrideStore(store_path) if store_path else None
    return Engine(config, overrides=overrides)


def _run(ctx: click.Context, body: Callable[[Engine], Awaitable[T]]) -> T:
    """Start an engine, run *body*, always close it. Exits 1 on toolchat errors."""

    async def _main() -> T:
        engine = _build_engine(ctx)
        await engine.start()
        try:
            return await body(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except ToolchatError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)


@click.group()
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $TOOLCHAT_CONFIG or ./config.yaml)",
)
@click.option(
    "--store",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSON file holding per-user AI overrides",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, store: Path | None, verbose: bool) -> None:
    """toolchat -- chat with a model that can call MCP tools.

    \b
    Usage:
      toolchat ask "What's the weather in Berlin?"
      toolchat search "python 3.13 release date"
      toolchat news
      toolchat tools
      toolchat broadcast --once
    """
    try:
        config = load_config(config_path)
    except ToolchatError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)
    configure_logging("DEBUG" if verbose else config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["store"] = store


def _identity_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    fn = click.option("--user", "-u", default="local", help="User id for allow-lists and overrides")(fn)
    fn = click.option("--platform", "-p", default="cli", help="Platform name")(fn)
    return fn


def _print_answer(text: str) -> None:
    console.print(Markdown(text) if text else "[dim](empty answer)[/dim]")


@cli.command()
@click.argument("words", nargs=-1, required=True)
@_identity_options
@click.pass_context
def ask(ctx: click.Context, words: tuple[str, ...], platform: str, user: str) -> None:
    """Ask a question; the model may call tools."""
    text = " ".join(words)
    _print_answer(_run(ctx, lambda engine: engine.chat(platform, user, text)))


@cli.command()
@click.argument("query", nargs=-1, required=True)
@_identity_options
@click.pass_context
def search(ctx: click.Context, query: tuple[str, ...], platform: str, user: str) -> None:
    """Search-assistant answer for QUERY."""
    text = " ".join(query)
    _print_answer(_run(ctx, lambda engine: engine.search(platform, user, text)))


@cli.command()
@_identity_options
@click.pass_context
def news(ctx: click.Context, platform: str, user: str) -> None:
    """Summarize today's news."""
    _print_answer(_run(ctx, lambda engine: engine.news(platform, user)))


@cli.command()
@click.pass_context
def tools(ctx: click.Context) -> None:
    """List the merged tool catalog."""

    async def _list(engine: Engine) -> None:
        table = Table(title=f"{engine.registry.tool_count} tools")
        table.add_column("Tool", style="cyan")
        table.add_column("Provider")
        table.add_column("Description", overflow="fold")
        for tool in engine.registry.list_tools():
            table.add_row(tool.name, engine.registry.owner_of(tool.name) or "", tool.description)
        console.print(table)

    _run(ctx, _list)


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Connect every provider and report its health."""

    async def _health(engine: Engine) -> bool:
        status = await engine.health_check()
        table = Table(title="MCP servers")
        table.add_column("Server", style="cyan")
        table.add_column("Healthy")
        for name in ctx.obj["config"].mcp_servers:
            ok = status.get(name, False)
            table.add_row(name, "[green]yes[/green]" if ok else "[red]no[/red]")
        console.print(table)
        return all(status.get(n, False) for n in ctx.obj["config"].mcp_servers)

    if not _run(ctx, _health):
        sys.exit(2)


@cli.command("set-ai")
@click.argument("assignments", nargs=-1, required=True)
@_identity_options
@click.pass_context
def set_ai(ctx: click.Context, assignments: tuple[str, ...], platform: str, user: str) -> None:
    """Store a per-user override, e.g. ``model=gpt-4o url=https://...``."""
    reply = _run(ctx, lambda engine: engine.handle_message(
        platform, user, "/set_ai " + " ".join(assignments),
    ))
    console.print(reply or "")


@cli.command("reset-ai")
@_identity_options
@click.pass_context
def reset_ai(ctx: click.Context, platform: str, user: str) -> None:
    """Drop the per-user override."""
    reply = _run(ctx, lambda engine: engine.handle_message(platform, user, "/reset_ai"))
    console.print(reply or "")


@cli.command()
@click.option("--once", is_flag=True, help="Fire one broadcast now and exit")
@click.pass_context
def broadcast(ctx: click.Context, once: bool) -> None:
    """Run the daily broadcast schedule (targets print to the console)."""
    config: AppConfig = ctx.obj["config"]

    async def _broadcast(engine: Engine) -> None:
        driver = BroadcastDriver(config.broadcast, engine.run_conversation, ConsoleDeliverer(console))
        if once:
            await driver.fire_once()
            return
        if not config.broadcast.enabled:
            logger.warning("Broadcast is disabled in the config; running anyway")
        await driver.run()

    try:
        _run(ctx, _broadcast)
    except KeyboardInterrupt:
        err_console.print("Stopped.")


if __name__ == "__main__":
    cli()
