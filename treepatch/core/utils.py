"""Shared utilities for treepatch."""

from __future__ import annotations

import hashlib
import os
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

HASH_BLOCK_SIZE = 1024 * 1024


def chunked_read(
    stream: BinaryIO,
    chunk_size: int = 8192
) -> Iterator[bytes]:
    """Read stream in chunks.

    Args:
        stream: Binary stream to read from
        chunk_size: Size of each chunk in bytes

    Yields:
        Data chunks as bytes

    Raises:
        ValueError: If chunk_size is not positive

    Example:
        >>> import io
        >>> stream = io.BytesIO(b"hello world")
        >>> chunks = list(chunked_read(stream, chunk_size=5))
        >>> chunks
        [b'hello', b' worl', b'd']
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        yield chunk


def read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read up to ``size`` bytes, looping over short reads.

    Compressed tar members return short reads, so a single ``read(size)``
    is not enough to tell a truncated stream from a slow one.
    """
    parts: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def sha256_file(path: Path) -> str:
    """Compute the lowercase hex SHA-256 digest of a file.

    Args:
        path: File to hash

    Returns:
        64-character lowercase hex digest

    Raises:
        OSError: If the file cannot be opened or read
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in chunked_read(f, HASH_BLOCK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


def iter_files(root: Path) -> Iterator[Path]:
    """Yield every regular file below ``root``.

    Symbolic links are neither followed nor yielded. Directory entries are
    visited in sorted order so that archives built from the same tree are
    reproducible.
    """
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_symlink() or not path.is_file():
                continue
            yield path


def count_files(root: Path) -> int:
    """Count regular files below ``root``."""
    return sum(1 for _ in iter_files(root))


def relative_posix(path: Path, root: Path) -> str:
    """Return ``path`` relative to ``root`` using forward slashes."""
    return path.relative_to(root).as_posix()


def format_size(size: int) -> str:
    """Format byte size as human-readable string.

    Args:
        size: Size in bytes

    Returns:
        Formatted string with appropriate unit (e.g., "1.5 MB")

    Example:
        >>> format_size(1024)
        '1.0 KB'
        >>> format_size(1536)
        '1.5 KB'
    """
    if size < 0:
        return "0 B"

    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_float < 1024.0:
            if unit == "B":
                return f"{int(size_float)} {unit}"
            return f"{size_float:.1f} {unit}"
        size_float /= 1024.0
    return f"{size_float:.1f} PB"


def validate_hash_string(hash_str: str, length: int | None = None) -> bool:
    """Validate hex hash string.

    Args:
        hash_str: Hash string to validate
        length: Required number of hex characters, if any

    Returns:
        True if valid hex string, False otherwise

    Example:
        >>> validate_hash_string("deadbeef")
        True
        >>> validate_hash_string("deadbeef", length=64)
        False
        >>> validate_hash_string("invalid")
        False
    """
    if not hash_str or hash_str != hash_str.strip() or ' ' in hash_str or '\t' in hash_str:
        return False
    if length is not None and len(hash_str) != length:
        return False
    try:
        bytes.fromhex(hash_str)
        return True
    except ValueError:
        return False
