"""Chunked delta stream: one file's delta as a sequence of ZBSDIFF1 frames.

Large files are split into fixed-size chunks so that generating or
applying a delta never holds more than one chunk of old and new data in
memory. Chunk ``i`` of the new file is diffed against the byte range
``[i * chunk_size, (i + 1) * chunk_size)`` of the old file; the
reconstructed output is the same whatever chunk size was used.

Format Structure:
- 20-byte header (big-endian): magic ``TPCHUNK1``, chunk size (u64),
  chunk count (u32)
- ``chunk_count`` records: frame length (u64, big-endian) followed by a
  ZBSDIFF1 frame

An empty new file is encoded as a header with a chunk count of zero.
"""

from __future__ import annotations

import struct
from io import BytesIO
from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field, field_validator

from treepatch.core.errors import DeltaCorruptError
from treepatch.core.utils import read_exact
from treepatch.formats.base import FormatParser
from treepatch.formats.zbsdiff import MAX_FILE_SIZE, ZbsdiffParser, is_zbsdiff

logger = structlog.get_logger()

MAGIC = b"TPCHUNK1"
HEADER_SIZE = 20
FRAME_LENGTH_SIZE = 8

# Bounds peak memory per file regardless of file size
CHUNK_SIZE = 400_000_000

_HEADER = struct.Struct(">8sQI")
_FRAME_LENGTH = struct.Struct(">Q")


class ChunkedDeltaHeader(BaseModel):
    """Chunked delta stream header."""

    magic: bytes = Field(default=MAGIC, description="Magic bytes (TPCHUNK1)")
    chunk_size: int = Field(description="Chunk size used when diffing")
    chunk_count: int = Field(ge=0, description="Number of ZBSDIFF1 frames that follow")

    @field_validator("magic")
    @classmethod
    def validate_magic(cls, v: bytes) -> bytes:
        """Validate magic bytes."""
        if v != MAGIC:
            raise ValueError(f"Invalid chunked delta magic: {v!r}")
        return v

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Validate chunk size is within frame limits."""
        if v <= 0:
            raise ValueError(f"Chunk size must be positive: {v}")
        if v > MAX_FILE_SIZE:
            raise ValueError(f"Chunk size too large: {v} > {MAX_FILE_SIZE}")
        return v


class ChunkedDeltaHeaderParser(FormatParser[ChunkedDeltaHeader]):
    """Parser for the fixed-size stream header."""

    format_name = "chunked delta header"

    def _parse(self, stream: BinaryIO) -> ChunkedDeltaHeader:
        data = read_exact(stream, HEADER_SIZE)
        if len(data) != HEADER_SIZE:
            raise ValueError(f"Header too short: {len(data)} < {HEADER_SIZE}")
        magic, chunk_size, chunk_count = _HEADER.unpack(data)
        return ChunkedDeltaHeader(magic=magic, chunk_size=chunk_size, chunk_count=chunk_count)

    def build(self, obj: ChunkedDeltaHeader) -> bytes:
        return _HEADER.pack(obj.magic, obj.chunk_size, obj.chunk_count)


def _stream_size(stream: BinaryIO) -> int:
    position = stream.tell()
    size = stream.seek(0, 2)
    stream.seek(position)
    return size - position


def write_chunked_delta(
    old: BinaryIO,
    new: BinaryIO,
    out: BinaryIO,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """Write the delta that turns ``old`` into ``new``.

    Args:
        old: Seekable stream with the original content
        new: Seekable stream with the target content, read from its
            current position
        out: Destination for the delta stream
        chunk_size: Chunk size in bytes

    Returns:
        Number of frames written
    """
    header = ChunkedDeltaHeader(
        chunk_size=chunk_size,
        chunk_count=-(-_stream_size(new) // chunk_size),
    )
    out.write(ChunkedDeltaHeaderParser().build(header))

    parser = ZbsdiffParser()
    for index in range(header.chunk_count):
        new_chunk = read_exact(new, chunk_size)
        old.seek(index * chunk_size)
        old_chunk = read_exact(old, chunk_size)

        frame = parser.build(parser.generate_patch(old_chunk, new_chunk))
        out.write(_FRAME_LENGTH.pack(len(frame)))
        out.write(frame)

        logger.debug("chunk_diffed", index=index, old_size=len(old_chunk),
                     new_size=len(new_chunk), frame_size=len(frame))

    return header.chunk_count


def apply_chunked_delta(old: BinaryIO, delta: BinaryIO, out: BinaryIO) -> int:
    """Reconstruct new content from ``old`` and a chunked delta stream.

    Args:
        old: Seekable stream with the original content
        delta: Delta stream positioned at its header
        out: Destination for the reconstructed content

    Returns:
        Number of bytes written

    Raises:
        DeltaCorruptError: If the stream is malformed or truncated
    """
    header = ChunkedDeltaHeaderParser().parse(delta)
    parser = ZbsdiffParser()
    written = 0

    for index in range(header.chunk_count):
        length_data = read_exact(delta, FRAME_LENGTH_SIZE)
        if len(length_data) != FRAME_LENGTH_SIZE:
            raise DeltaCorruptError(f"Delta truncated before frame {index}")
        (frame_length,) = _FRAME_LENGTH.unpack(length_data)
        if frame_length > MAX_FILE_SIZE:
            raise DeltaCorruptError(f"Frame {index} too large: {frame_length}")

        frame_data = read_exact(delta, frame_length)
        if len(frame_data) != frame_length:
            raise DeltaCorruptError(f"Frame {index} truncated: {len(frame_data)} < {frame_length}")
        if not is_zbsdiff(frame_data):
            raise DeltaCorruptError(f"Frame {index} is not a ZBSDIFF1 frame")

        frame = parser.parse(BytesIO(frame_data))
        is_last = index == header.chunk_count - 1
        if frame.new_size > header.chunk_size or (not is_last and frame.new_size != header.chunk_size):
            raise DeltaCorruptError(
                f"Frame {index} produces {frame.new_size} bytes, chunk size is {header.chunk_size}"
            )

        old.seek(index * header.chunk_size)
        old_chunk = read_exact(old, header.chunk_size)
        new_chunk = parser.apply_patch(old_chunk, frame)
        out.write(new_chunk)
        written += len(new_chunk)

    if delta.read(1):
        raise DeltaCorruptError("Trailing data after last frame")

    return written
