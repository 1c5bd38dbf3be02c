"""Main entry point for the treepatch CLI."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import click
import structlog
from rich.console import Console

from treepatch import __version__
from treepatch.commands.diff import diff
from treepatch.commands.patch import patch
from treepatch.commands.update import status, update
from treepatch.core.config import DEFAULT_CONFIG_FILE, AppConfig

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def _configure_logging(level: str) -> None:
    """Route structlog through stdlib logging at ``level``."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level))
    logging.getLogger().setLevel(getattr(logging, level))


@click.group()
@click.version_option(version=__version__, prog_name="treepatch")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", "-d", is_flag=True, help="Enable debug output")
@click.option(
    "--manifest",
    "-m",
    help="Version manifest URL or path (overrides the configured one)",
)
@click.pass_context
def main(
    ctx: click.Context,
    config: Path | None,
    verbose: bool,
    debug: bool,
    manifest: str | None,
) -> None:
    """Incremental binary updates for installed file trees."""
    ctx.ensure_object(dict)

    # Load configuration
    try:
        app_config = AppConfig.load(config)
    except Exception as e:
        logger.error("config_load_failed", error=str(e))
        sys.exit(1)

    # Override config with CLI options
    if verbose or debug:
        app_config.log_level = "DEBUG" if debug else "INFO"
    if manifest:
        app_config.manifest_url = manifest

    _configure_logging(app_config.log_level)

    # Store config and console in context for subcommands
    ctx.obj["config"] = app_config
    ctx.obj["console"] = Console()
    ctx.obj["verbose"] = verbose or debug
    ctx.obj["debug"] = debug

    logger.debug("cli_initialized", config=app_config.model_dump(mode="json"))


@main.command()
@click.pass_context
def version(ctx: click.Context) -> None:
    """Show version information."""
    console: Console = ctx.obj["console"]

    console.print(f"treepatch {__version__}")
    if ctx.obj["verbose"]:
        console.print(f"Python {sys.version}")
        console.print(f"Platform: {sys.platform}")


@main.command("init-config")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"File to write (default: {DEFAULT_CONFIG_FILE})",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def init_config(ctx: click.Context, output: Path | None, force: bool) -> None:
    """Write the effective configuration, including --manifest, to a file."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    target = output or DEFAULT_CONFIG_FILE

    if target.exists() and not force:
        raise click.ClickException(f"{target} already exists; pass --force to overwrite it")

    config.save(target)
    console.print(f"[green]Wrote configuration to {target}[/green]")


# Register commands
main.add_command(diff)
main.add_command(patch)
main.add_command(status)
main.add_command(update)


def handle_exception(exc_type: type[BaseException], exc_value: BaseException, exc_traceback: Any) -> None:
    """Handle uncaught exceptions."""
    if issubclass(exc_type, KeyboardInterrupt):
        logger.info("operation_cancelled")
        sys.exit(1)

    logger.error(
        "uncaught_exception",
        exc_info=(exc_type, exc_value, exc_traceback),
    )
    sys.exit(1)


if __name__ == "__main__":
    # Install exception handler
    sys.excepthook = handle_exception

    try:
        main()
    except Exception as e:
        logger.error("cli_failed", error=str(e))
        sys.exit(1)
