"""Delta creation command."""

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
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from treepatch.core import codec
from treepatch.core.config import AppConfig
from treepatch.core.errors import classify_error
from treepatch.core.progress import DiffState
from treepatch.core.utils import format_size
from treepatch.formats.zbsdiff import MAX_FILE_SIZE

logger = structlog.get_logger()


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


@click.command()
@click.argument("old", type=click.Path(exists=True, path_type=Path))
@click.argument("new", type=click.Path(exists=True, path_type=Path))
@click.argument("destination", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--chunk-size",
    type=click.IntRange(1, MAX_FILE_SIZE),
    help="Chunk size in bytes for per-file deltas (defaults to the configured value)",
)
@click.option(
    "--preset",
    type=click.IntRange(0, 9),
    help="xz compression preset for tree archives (defaults to the configured value)",
)
@click.pass_context
def diff(
    ctx: click.Context,
    old: Path,
    new: Path,
    destination: Path,
    chunk_size: int | None,
    preset: int | None,
) -> None:
    """Create a delta from OLD to NEW and write it to DESTINATION.

    OLD and NEW must both be files, producing a raw chunked delta, or both
    be directories, producing an xz-compressed delta archive.
    """
    config, console, verbose, _ = _get_context_objects(ctx)
    chunk_size = chunk_size or config.chunk_size
    preset = config.compression_preset if preset is None else preset

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Diffing files...", total=None)

            def update(state: DiffState) -> None:
                progress.update(task, completed=state.done, total=state.out_of)

            state = codec.diff(old, new, destination, update, chunk_size=chunk_size, preset=preset)
    except Exception as e:
        raise click.ClickException(classify_error(e).describe()) from e

    logger.info("delta_written", destination=str(destination), files=state.done)
    console.print(
        f"[green]Wrote {destination}[/green] "
        f"({state.done} of {state.out_of} files, {format_size(destination.stat().st_size)})"
    )
    if verbose and state.done < state.out_of:
        console.print(
            f"[yellow]{state.out_of - state.done} new files have no counterpart "
            "in OLD and were not included[/yellow]"
        )
