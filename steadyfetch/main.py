"""Main entry point for the steadyfetch administration CLI.

Sets up the Typer CLI application, performs dependency injection (Composition
Root), defines CLI commands, and delegates execution to the CommandHandler.
"""

import asyncio
import logging
from typing import Annotated, Any, Coroutine, Dict, Optional

import typer

from steadyfetch.core.command_handler import CLEARABLE_TIERS, CommandHandler
from steadyfetch.core.context import create_context
from steadyfetch.infrastructure.cli.display import ConsoleDisplay
from steadyfetch.infrastructure.config.settings import get_config, load_configuration
from steadyfetch.infrastructure.monitoring.logger_setup import DEFAULT_LOG_FORMAT, setup_logging

logger = logging.getLogger(__name__)

# --- Dependency Injection Container (Manual) ---

_dependencies: Optional[Dict[str, Any]] = None


def create_dependencies() -> Dict[str, Any]:
    """Creates and wires up the CLI dependencies.

    The data-access context itself is only built when a command needs it.
    """
    load_configuration()
    setup_logging(
        log_level=get_config("logging.level", "WARNING"),
        log_format=get_config("logging.format", DEFAULT_LOG_FORMAT),
        log_file=get_config("logging.file"),
    )
    ui = ConsoleDisplay()
    dependencies: Dict[str, Any] = {
        "ui": ui,
        "command_handler": CommandHandler(context_factory=lambda: create_context(), ui=ui),
    }
    logger.debug("CLI dependencies initialized.")
    return dependencies


def get_dependencies() -> Dict[str, Any]:
    global _dependencies
    if _dependencies is None:
        _dependencies = create_dependencies()
    return _dependencies


def reset_dependencies() -> None:
    """Forgets the wired dependencies so the next command rebuilds them."""
    global _dependencies
    _dependencies = None


# --- Typer App Definition ---
app = typer.Typer(
    name="steadyfetch",
    help="steadyfetch: inspect and maintain the resilient data-access caches and sync queue.",
    add_completion=False,
)


# --- Helper for Running Async Commands ---
async def _run_and_close(handler: CommandHandler, coro: Coroutine[Any, Any, None]) -> None:
    try:
        await coro
    finally:
        await handler.close()


def run_async(coro: Coroutine[Any, Any, None]) -> None:
    """Runs a handler coroutine from a sync Typer command, then closes the context."""
    dependencies = get_dependencies()
    handler: CommandHandler = dependencies["command_handler"]
    try:
        asyncio.run(_run_and_close(handler, coro))
    except Exception as e:
        logger.error(f"Error executing async command: {e}", exc_info=True)
        dependencies["ui"].display_error(f"Command execution failed: {e}")
        raise typer.Exit(code=1)


def _handler() -> CommandHandler:
    return get_dependencies()["command_handler"]


# --- CLI Commands ---

@app.command()
def stats():
    """Show cache tier sizes, memory-tier counters and offline cache statistics."""
    run_async(_handler().handle_stats())


@app.command(name="clear-cache")
def clear_cache_command(
    tier: Annotated[str, typer.Option("--tier", "-t", help=f"Tier to clear ({', '.join(CLEARABLE_TIERS)}).")] = "all",
):
    """Clears one cache tier or all of them."""
    run_async(_handler().handle_clear_cache(tier))


@app.command()
def invalidate(
    pattern: Annotated[str, typer.Argument(help="Glob pattern ('*' wildcard) matched anywhere in the key.")],
    regex: Annotated[bool, typer.Option("--regex", help="Treat PATTERN as a regular expression.")] = False,
):
    """Removes every cache entry whose key matches PATTERN."""
    run_async(_handler().handle_invalidate(pattern, regex=regex))


@app.command()
def queue():
    """Lists mutations waiting in the offline sync queue."""
    run_async(_handler().handle_queue())


@app.command()
def sync():
    """Replays the offline sync queue in insertion order."""
    run_async(_handler().handle_sync())


@app.command()
def pref(
    key: Annotated[str, typer.Argument(help="Preference name.")],
    value: Annotated[Optional[str], typer.Argument(help="New value; omit to show the current one.")] = None,
):
    """Shows or sets a stored preference."""
    run_async(_handler().handle_preference(key, value))


# --- Main Execution Guard ---

def cli_entry_point():
    """Function to be called by the script entry point in pyproject.toml."""
    app()


if __name__ == "__main__":
    cli_entry_point()
