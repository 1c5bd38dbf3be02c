"""Delta application command."""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from treepatch.core import codec
from treepatch.core.errors import classify_error
from treepatch.core.progress import CurrentPatchingPath


@click.command()
@click.argument("old", type=click.Path(exists=True, path_type=Path))
@click.argument("delta", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("destination", type=click.Path(path_type=Path))
@click.pass_context
def patch(ctx: click.Context, old: Path, delta: Path, destination: Path) -> None:
    """Apply DELTA to OLD and write the result to DESTINATION.

    A directory OLD expects a delta archive and writes the patched files
    below the DESTINATION directory; OLD itself is left untouched. A file
    OLD expects a raw delta and writes the DESTINATION file.
    """
    console: Console = ctx.obj["console"]

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Patching...", total=None)

            def update(current: CurrentPatchingPath) -> None:
                progress.update(task, description=f"Patching {current.path}")

            written = codec.patch(old, delta, destination, update)
    except Exception as e:
        raise click.ClickException(classify_error(e).describe()) from e

    console.print(f"[green]Patched {written} file(s) into {destination}[/green]")
