"""Installed-version status and upgrade commands."""

from __future__ import annotations

from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from treepatch.core.config import AppConfig
from treepatch.core.errors import NoLinkAvailableError, PatcherError
from treepatch.core.orchestrator import Updater
from treepatch.core.progress import (
    Failed,
    Finished,
    PatchingFile,
    ProgressEvent,
    VersionFinished,
    VersionStarted,
)
from treepatch.core.worker import PatchWorker

logger = structlog.get_logger()

# Seconds between event queue polls while the worker runs
POLL_INTERVAL = 0.1


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _resolve_tree(config: AppConfig, path: Path | None) -> Path:
    """Use the given path or fall back to the first existing default path."""
    if path is not None:
        return path

    default = config.get_default_path()
    if default is None:
        raise click.ClickException(
            "No installation path given and none of the default paths exist on this system"
        )
    return default


def _load_updater(config: AppConfig, linear: bool) -> Updater:
    try:
        updater = Updater.from_config(config)
    except PatcherError as e:
        raise click.ClickException(e.describe()) from e
    if linear:
        updater.use_graph = False
    return updater


class _ProgressRenderer:
    """Turns worker events into rich progress updates."""

    def __init__(self, progress: Progress, task: TaskID):
        self.progress = progress
        self.task = task
        self.version: str | None = None
        self.failed = False

    def handle(self, events: list[ProgressEvent]) -> None:
        for event in events:
            if isinstance(event, VersionStarted):
                self.version = event.name
                self.progress.update(self.task, description=f"Updating to {event.name}")
            elif isinstance(event, PatchingFile):
                self.progress.update(self.task, description=f"{self.version}: {event.path}")
            elif isinstance(event, VersionFinished):
                self.progress.advance(self.task)
            elif isinstance(event, Finished):
                self.progress.update(self.task, description="Update complete")
            elif isinstance(event, Failed):
                self.failed = True
                self.progress.update(self.task, description=f"[red]Failed: {event.error.kind}")


@click.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--linear", is_flag=True, help="Follow plain next-version links only, ignoring jumps")
@click.pass_context
def status(ctx: click.Context, path: Path | None, linear: bool) -> None:
    """Show the installed version of PATH and the pending updates."""
    config, console, verbose, _ = _get_context_objects(ctx)
    tree = _resolve_tree(config, path)
    updater = _load_updater(config, linear)

    try:
        current = updater.resolver.require_current_version(tree)
        try:
            transitions = updater.plan_from(current)
            path_error = None
        except NoLinkAvailableError as e:
            transitions = []
            path_error = e
    except PatcherError as e:
        raise click.ClickException(e.describe()) from e
    finally:
        updater.close()

    catalog = updater.catalog
    table = Table(title="Installation Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Install Path", str(tree))
    table.add_row("Installed Version", catalog[current].name)
    table.add_row("Latest Version", catalog.latest.name)
    table.add_row("Up To Date", "yes" if updater.resolver.is_latest(current) else "no")
    if transitions:
        table.add_row("Update Path", " -> ".join([catalog[current].name] + [t.new.name for t in transitions]))
    elif path_error is not None:
        table.add_row("Update Path", f"[red]{path_error.message}[/red]")

    if linear and verbose:
        pending = updater.resolver.pending_versions(current)
        table.add_row("Pending Versions", ", ".join(v.name for v in pending) or "none")

    console.print(table)


@click.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Apply without asking for confirmation")
@click.option("--linear", is_flag=True, help="Follow plain next-version links only, ignoring jumps")
@click.option("--target", help="Stop at this version instead of the latest one")
@click.pass_context
def update(ctx: click.Context, path: Path | None, yes: bool, linear: bool, target: str | None) -> None:
    """Bring the installation at PATH up to date.

    Each update is downloaded and patched into a staging directory first
    and only merged into PATH once it has been applied completely.
    """
    config, console, _, _ = _get_context_objects(ctx)
    tree = _resolve_tree(config, path)
    updater = _load_updater(config, linear)

    try:
        try:
            current = updater.resolver.require_current_version(tree)
            transitions = updater.plan_from(current, target)
        except PatcherError as e:
            raise click.ClickException(e.describe()) from e

        installed = updater.catalog[current].name
        if not transitions:
            console.print(f"[green]Already up to date ({installed})[/green]")
            return

        console.print(f"Installed version: [cyan]{installed}[/cyan]")
        console.print("Update path: " + " -> ".join([installed] + [t.new.name for t in transitions]))
        if not yes:
            click.confirm(f"Apply {len(transitions)} update(s)?", abort=True)

        worker = PatchWorker(tree, transitions, updater.fetcher, staging_root=updater.staging_root)
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            renderer = _ProgressRenderer(progress, progress.add_task("Starting...", total=len(transitions)))
            worker.start()
            try:
                while worker.is_alive():
                    worker.join(POLL_INTERVAL)
                    renderer.handle(worker.drain())
            except KeyboardInterrupt:
                console.print("[yellow]Cancelling after the current file...[/yellow]")
                worker.cancel()
                worker.join()
            renderer.handle(worker.drain())
    finally:
        updater.close()

    if worker.cancelled:
        logger.info("update_command_cancelled")
        raise click.ClickException(
            "Update cancelled; versions applied before the interruption were kept"
        )
    if worker.error is not None:
        raise click.ClickException(worker.error.describe())

    logger.info("update_command_finished", version=transitions[-1].new.name)
    console.print(f"[green]Updated {installed} to {transitions[-1].new.name}[/green]")
