"""
Chat Aggregator CLI

Commands:
- serve    run the HTTP gateway
- status   show configuration and buffer state
- sweep    flush overdue windows once
- onboard  write a default config file
"""

from __future__ import annotations

import asyncio
import sys
from typing import Final

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from chatagg import __logo__, __version__


# ============================================================================
# CLI App
# ============================================================================

APP_NAME: Final[str] = "chatagg"

app = typer.Typer(
    name=APP_NAME,
    help=f"{__logo__} Chat Aggregator - message debounce gateway",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _mark(ok: bool) -> str:
    return "[green]✓[/green]" if ok else "[red]✗[/red]"


# ============================================================================
# Version
# ============================================================================

def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} chatagg v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
):
    """Chat Aggregator - message debounce gateway."""
    pass


# ============================================================================
# Onboard
# ============================================================================

@app.command()
def onboard():
    """Write a default configuration file."""
    from chatagg.config.loader import get_config_path, save_config
    from chatagg.config.schema import Config
    from chatagg.utils.helpers import RuntimePaths

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    paths = RuntimePaths.default().ensure()
    save_config(Config(), config_path)

    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print(f"[green]✓[/green] Upload directory at {paths.uploads}")

    console.print(f"\n{__logo__} Chat Aggregator is ready!")
    console.print("\nNext steps:")
    console.print("  1. Set [cyan]delivery.webhookUrl[/cyan] and [cyan]redis.url[/cyan] in the config")
    console.print("  2. Add an OpenAI key for audio and image messages")
    console.print("  3. Run: [cyan]chatagg serve[/cyan]")


# ============================================================================
# Serve
# ============================================================================

@app.command()
def serve(
    host: str = typer.Option(None, "--host"),
    port: int = typer.Option(None, "--port", "-p"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Start the HTTP gateway."""
    import uvicorn

    from chatagg.config.loader import load_config
    from chatagg.gateway.app import create_app

    _configure_logging(verbose)

    config = load_config()
    host = host or config.gateway.host
    port = port or config.gateway.port

    console.print(f"{__logo__} Starting gateway on {host}:{port} (window {config.aggregation.window_seconds}s)...")

    uvicorn.run(
        create_app(config),
        host=host,
        port=port,
        log_level="debug" if verbose else "info",
    )


# ============================================================================
# Sweep
# ============================================================================

@app.command()
def sweep(
    grace: float = typer.Option(0.0, "--grace", "-g", help="Seconds past deadline before a window counts as overdue"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Flush every overdue window once and wait for delivery."""
    from chatagg.buffer.store import StorageError
    from chatagg.config.loader import load_config
    from chatagg.gateway.runtime import build_runtime

    _configure_logging(verbose)

    config = load_config()
    config.aggregation.sweep_enabled = False
    runtime = build_runtime(config)

    async def run() -> int:
        await runtime.startup()
        try:
            return await runtime.engine.sweep_now(grace)
        finally:
            await runtime.shutdown()

    try:
        flushed = asyncio.run(run())
    except StorageError as e:
        console.print(f"[red]Sweep failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"{__logo__} Flushed {flushed} window(s)")


# ============================================================================
# Status
# ============================================================================

@app.command()
def status():
    """Show configuration and buffer state."""
    from chatagg.buffer.store import BufferStore, StorageError
    from chatagg.config.loader import get_config_path, load_config
    from chatagg.gateway.runtime import create_redis

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} Chat Aggregator Status\n")

    console.print(f"Config: {config_path} {_mark(config_path.exists())}")
    console.print(f"Webhook: {config.delivery.webhook_url or '[dim]not set[/dim]'}")
    console.print(f"OpenAI: {'[green]✓[/green]' if config.openai_configured else '[dim]not set[/dim]'}")

    agg = config.aggregation
    table = Table(title="Aggregation")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("window", f"{agg.window_seconds}s")
    table.add_row("marker ttl", f"{config.marker_ttl_seconds}s")
    table.add_row("max buffer", str(agg.max_buffer_size))
    table.add_row("max length", str(agg.max_message_length))
    table.add_row("sweep", f"every {agg.sweep_interval_seconds}s" if agg.sweep_enabled else "disabled")
    console.print(table)

    async def probe() -> tuple[bool, int | None]:
        redis = create_redis(config)
        store = BufferStore(redis, agg.window_seconds, config.redis.key_prefix)
        try:
            if not await store.ping():
                return False, None
            try:
                return True, await store.pending_count()
            except StorageError:
                return True, None
        finally:
            await redis.aclose()

    reachable, pending = asyncio.run(probe())
    console.print(f"Redis: {config.redis.resolved_url} {_mark(reachable)}")
    if pending is not None:
        console.print(f"Pending windows: {pending}")


if __name__ == "__main__":
    app()
