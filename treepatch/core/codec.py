"""Delta codec pipeline for single files and whole directory trees.

A tree delta is a tar archive with one entry per file of the new tree,
keyed by its POSIX path relative to the tree root. Each entry holds the
chunked delta (see :mod:`treepatch.formats.chunked_delta`) from the old
file at the same path. Archives shipped over the network are xz
compressed end to end.

Only files that exist in both trees can be expressed: a new file without
an old counterpart is skipped when diffing, and an entry whose old file
is missing is skipped when patching. Both cases are logged as warnings
and do not abort the operation.
"""

from __future__ import annotations

import os
import tarfile
import tempfile
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import BinaryIO

import structlog

from treepatch.core.errors import (
    DeltaCorruptError,
    InputKindMismatchError,
    PatchCancelledError,
)
from treepatch.core.progress import (
    CurrentPatchingPath,
    DiffCallback,
    DiffState,
    PatchCallback,
)
from treepatch.core.utils import count_files, iter_files, relative_posix
from treepatch.formats.chunked_delta import (
    CHUNK_SIZE,
    apply_chunked_delta,
    write_chunked_delta,
)

logger = structlog.get_logger()

COMPRESSION_PRESET = 9


def check_cancelled(cancel: threading.Event | None) -> None:
    """Raise if cooperative cancellation was requested."""
    if cancel is not None and cancel.is_set():
        raise PatchCancelledError("Update cancelled")


@contextmanager
def atomic_output(destination: Path) -> Iterator[BinaryIO]:
    """Write to a sibling temp file that replaces ``destination`` on success.

    On any failure the temp file is removed and ``destination`` keeps its
    previous content, or stays absent. The temp file is created with the
    usual umask-derived permissions, like ``open(destination, "wb")``.
    """
    tmp_path = destination.with_name(f".{destination.name}.{uuid.uuid4().hex[:8]}.part")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0), 0o666)
    try:
        with os.fdopen(fd, "wb") as out:
            yield out
        os.replace(tmp_path, destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _overlaps(a: Path, b: Path) -> bool:
    a, b = a.resolve(), b.resolve()
    return a == b or a.is_relative_to(b) or b.is_relative_to(a)


def diff_file(old: Path, new: Path, destination: BinaryIO, chunk_size: int = CHUNK_SIZE) -> int:
    """Write the chunked delta between two regular files.

    Returns:
        Number of frames written
    """
    with open(old, "rb") as old_stream, open(new, "rb") as new_stream:
        return write_chunked_delta(old_stream, new_stream, destination, chunk_size)


def patch_file(old: Path, delta: BinaryIO, destination: Path) -> int:
    """Reconstruct ``destination`` from ``old`` and a chunked delta.

    Returns:
        Number of bytes written

    Raises:
        InputKindMismatchError: If ``destination`` is ``old`` itself
    """
    if destination.exists() and destination.resolve() == old.resolve():
        raise InputKindMismatchError(f"Destination {destination} is the file being patched")
    with open(old, "rb") as old_stream, atomic_output(destination) as out:
        return apply_chunked_delta(old_stream, delta, out)


def diff_tree(
    old_dir: Path,
    new_dir: Path,
    destination: tarfile.TarFile,
    update: DiffCallback | None = None,
    *,
    chunk_size: int = CHUNK_SIZE,
) -> DiffState:
    """Append one delta entry per file of ``new_dir`` to ``destination``.

    Args:
        old_dir: Directory with the previous version
        new_dir: Directory with the new version
        destination: Tar archive open for writing
        update: Called with the running (done, out_of) after each file
        chunk_size: Chunk size for the per-file deltas

    Returns:
        Final progress state

    Raises:
        InputKindMismatchError: If either input is not a directory
    """
    if not (old_dir.is_dir() and new_dir.is_dir()):
        raise InputKindMismatchError("old and new should both be files or both be directories")

    state = DiffState(done=0, out_of=count_files(new_dir))
    logger.info("diff_tree_started", old=str(old_dir), new=str(new_dir), files=state.out_of)

    for new_path in iter_files(new_dir):
        relative = relative_posix(new_path, new_dir)
        old_path = old_dir / relative
        if not old_path.is_file():
            logger.warning("ignoring_file_without_counterpart", path=relative)
            continue

        with tempfile.TemporaryFile() as delta:
            diff_file(old_path, new_path, delta, chunk_size)
            info = tarfile.TarInfo(relative)
            info.size = delta.tell()
            info.mtime = int(new_path.stat().st_mtime)
            delta.seek(0)
            destination.addfile(info, delta)

        state = DiffState(done=state.done + 1, out_of=state.out_of)
        logger.debug("file_diffed", path=relative, delta_size=info.size)
        if update is not None:
            update(state)

    logger.info("diff_tree_finished", files=state.done, skipped=state.out_of - state.done)
    return state


def _entry_path(name: str) -> PurePosixPath:
    relative = PurePosixPath(name)
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise DeltaCorruptError(f"Archive entry escapes the tree: {name!r}")
    return relative


def apply_tree(
    old_dir: Path,
    archive: tarfile.TarFile,
    destination: Path,
    update: PatchCallback | None = None,
    *,
    cancel: threading.Event | None = None,
) -> int:
    """Patch every archive entry against ``old_dir`` into ``destination``.

    ``old_dir`` is only read. Reconstructed files are written below
    ``destination``, mirroring their relative paths.

    Args:
        old_dir: Directory with the installed version
        archive: Tar archive of chunked deltas
        destination: Staging directory; created if missing
        update: Called with each entry's path before it is processed
        cancel: Optional event checked between entries

    Returns:
        Number of files written

    Raises:
        InputKindMismatchError: If ``old_dir`` is not a directory,
            ``destination`` exists and is not one, or the two overlap
        DeltaCorruptError: If an entry is malformed
        PatchCancelledError: If ``cancel`` is set
    """
    if not old_dir.is_dir() or (destination.exists() and not destination.is_dir()):
        raise InputKindMismatchError("old and destination should both be directories")
    if _overlaps(old_dir, destination):
        raise InputKindMismatchError(f"Destination {destination} overlaps the tree being patched {old_dir}")
    destination.mkdir(parents=True, exist_ok=True)

    written = 0
    for member in archive:
        check_cancelled(cancel)
        if not member.isfile():
            continue

        relative = _entry_path(member.name)
        if update is not None:
            update(CurrentPatchingPath(path=relative.as_posix()))

        old_path = old_dir.joinpath(*relative.parts)
        if not old_path.is_file():
            logger.warning("ignoring_entry_without_old_file", path=relative.as_posix())
            continue

        target = destination.joinpath(*relative.parts)
        target.parent.mkdir(parents=True, exist_ok=True)

        delta = archive.extractfile(member)
        if delta is None:
            raise DeltaCorruptError(f"Archive entry has no content: {member.name}")
        with delta:
            size = patch_file(old_path, delta, target)

        written += 1
        logger.debug("file_patched", path=relative.as_posix(), size=size)

    logger.info("apply_tree_finished", files=written, destination=str(destination))
    return written


def open_archive(fileobj: BinaryIO) -> tarfile.TarFile:
    """Open a delta archive, detecting its compression."""
    try:
        return tarfile.open(fileobj=fileobj, mode="r:*")
    except tarfile.TarError as e:
        raise DeltaCorruptError(f"Not a delta archive: {e}") from e


def diff(
    old: Path,
    new: Path,
    destination: Path,
    update: DiffCallback | None = None,
    *,
    chunk_size: int = CHUNK_SIZE,
    preset: int = COMPRESSION_PRESET,
) -> DiffState:
    """Create a delta from ``old`` to ``new`` at ``destination``.

    Two directories produce an xz-compressed tree archive; two regular
    files produce a raw chunked delta.

    Raises:
        InputKindMismatchError: If the inputs are of different kinds
    """
    if old.is_dir() and new.is_dir():
        with atomic_output(destination) as out:
            with tarfile.open(fileobj=out, mode="w:xz", format=tarfile.PAX_FORMAT, preset=preset) as tar:
                return diff_tree(old, new, tar, update, chunk_size=chunk_size)

    if old.is_file() and new.is_file():
        with atomic_output(destination) as out:
            diff_file(old, new, out, chunk_size)
        state = DiffState(done=1, out_of=1)
        if update is not None:
            update(state)
        return state

    raise InputKindMismatchError("old and new should both be files or both be directories")


def patch(
    old: Path,
    delta: Path,
    destination: Path,
    update: PatchCallback | None = None,
) -> int:
    """Apply the delta at ``delta`` to ``old``, writing into ``destination``.

    A directory ``old`` expects a tree archive and a directory (or new)
    ``destination``; a regular file ``old`` expects a raw chunked delta
    and a file ``destination``.

    Returns:
        Number of files written

    Raises:
        InputKindMismatchError: If the path kinds do not line up
    """
    if old.is_dir():
        with open(delta, "rb") as fileobj, open_archive(fileobj) as archive:
            return apply_tree(old, archive, destination, update)

    if old.is_file() and not destination.is_dir():
        if update is not None:
            update(CurrentPatchingPath(path=old.name))
        with open(delta, "rb") as fileobj:
            patch_file(old, fileobj, destination)
        return 1

    raise InputKindMismatchError("old and destination should both be files or both be directories")
