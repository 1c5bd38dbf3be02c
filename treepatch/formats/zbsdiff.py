"""ZBSDIFF1 (Zlib-compressed Binary Differential) frame format.

A ZBSDIFF1 frame is a bsdiff patch whose three data blocks are each
zlib-compressed. Treepatch emits one frame per chunk of a file (see
:mod:`treepatch.formats.chunked_delta`).

Format Structure:
- 32-byte header (big-endian) with format signature and block sizes
- Control block (zlib-compressed): patch instructions
- Diff block (zlib-compressed): bytewise differences against old data
- Extra block (zlib-compressed): new data insertions

Control entries are three signed little-endian 64-bit integers:
bytes to add from the diff block, bytes to copy from the extra block,
and a relative seek in the old data. Matching is delegated to bsdiff4's
suffix-sort implementation; this module owns the framing.
"""

from __future__ import annotations

import struct
import zlib
from typing import BinaryIO

import bsdiff4.core
import structlog
from pydantic import BaseModel, Field, field_validator

from treepatch.core.errors import DeltaCorruptError
from treepatch.formats.base import FormatParser

logger = structlog.get_logger()

MAGIC = b"ZBSDIFF1"
HEADER_SIZE = 32
CONTROL_ENTRY_SIZE = 24

# Safety limits
MAX_FILE_SIZE = 1024 * 1024 * 1024  # 1GB

ControlEntry = tuple[int, int, int]


class ZbsdiffHeader(BaseModel):
    """ZBSDIFF1 frame header (32 bytes, big-endian)."""

    magic: bytes = Field(description="Magic bytes (ZBSDIFF1)")
    control_length: int = Field(description="Control block compressed size (8 bytes)")
    diff_length: int = Field(description="Diff block compressed size (8 bytes)")
    new_size: int = Field(description="Target size after patching (8 bytes)")

    @field_validator("magic")
    @classmethod
    def validate_magic(cls, v: bytes) -> bytes:
        """Validate magic bytes."""
        if v != MAGIC:
            raise ValueError(f"Invalid ZBSDIFF1 magic: {v!r}")
        return v

    @field_validator("control_length", "diff_length", "new_size")
    @classmethod
    def validate_sizes(cls, v: int) -> int:
        """Validate size fields are reasonable."""
        if v < 0:
            raise ValueError(f"Size cannot be negative: {v}")
        if v > MAX_FILE_SIZE:
            raise ValueError(f"Size too large: {v} > {MAX_FILE_SIZE}")
        return v


class ZbsdiffFile(BaseModel):
    """Decoded ZBSDIFF1 frame.

    Control entries are kept as plain tuples; a chunk near the size limit
    can carry hundreds of thousands of them.
    """

    new_size: int = Field(ge=0, le=MAX_FILE_SIZE, description="Target size after patching")
    control_entries: list[ControlEntry] = Field(default_factory=list, description="Control block entries")
    diff_data: bytes = Field(default=b"", description="Diff block data (decompressed)")
    extra_data: bytes = Field(default=b"", description="Extra block data (decompressed)")


class ZbsdiffParser(FormatParser[ZbsdiffFile]):
    """Parser, builder and applier for ZBSDIFF1 frames."""

    format_name = "ZBSDIFF1"

    def _parse(self, stream: BinaryIO) -> ZbsdiffFile:
        header = self._parse_header(stream)

        control_compressed = stream.read(header.control_length)
        if len(control_compressed) != header.control_length:
            raise ValueError(f"Control block too short: {len(control_compressed)} < {header.control_length}")

        diff_compressed = stream.read(header.diff_length)
        if len(diff_compressed) != header.diff_length:
            raise ValueError(f"Diff block too short: {len(diff_compressed)} < {header.diff_length}")

        extra_compressed = stream.read()

        control_data = self._decompress(control_compressed, "control")
        diff_data = self._decompress(diff_compressed, "diff")
        extra_data = self._decompress(extra_compressed, "extra")

        control_entries = self._parse_control_entries(control_data)

        logger.debug("zbsdiff_parsed",
                     control_entries=len(control_entries),
                     diff_size=len(diff_data),
                     extra_size=len(extra_data),
                     new_size=header.new_size)

        return ZbsdiffFile.model_construct(
            new_size=header.new_size,
            control_entries=control_entries,
            diff_data=diff_data,
            extra_data=extra_data,
        )

    def build(self, obj: ZbsdiffFile) -> bytes:
        """Build a ZBSDIFF1 frame.

        Args:
            obj: Decoded frame

        Returns:
            Binary frame data
        """
        control_compressed = zlib.compress(self._build_control_entries(obj.control_entries))
        diff_compressed = zlib.compress(obj.diff_data)
        extra_compressed = zlib.compress(obj.extra_data) if obj.extra_data else b""

        header = ZbsdiffHeader(
            magic=MAGIC,
            control_length=len(control_compressed),
            diff_length=len(diff_compressed),
            new_size=obj.new_size,
        )
        return self._build_header(header) + control_compressed + diff_compressed + extra_compressed

    def generate_patch(self, old_data: bytes, new_data: bytes) -> ZbsdiffFile:
        """Compute the frame that turns ``old_data`` into ``new_data``.

        Args:
            old_data: Original bytes
            new_data: Target bytes

        Returns:
            Decoded frame

        Raises:
            ValueError: If either input exceeds the size limit
        """
        if len(old_data) > MAX_FILE_SIZE or len(new_data) > MAX_FILE_SIZE:
            raise ValueError(f"Input too large for a single frame (limit {MAX_FILE_SIZE})")

        if not new_data:
            return ZbsdiffFile(new_size=0)
        if not old_data:
            # Nothing to match against, ship the chunk verbatim
            return ZbsdiffFile(
                new_size=len(new_data),
                control_entries=[(0, len(new_data), 0)],
                extra_data=new_data,
            )

        control, diff_data, extra_data = bsdiff4.core.diff(old_data, new_data)
        return ZbsdiffFile.model_construct(
            new_size=len(new_data),
            control_entries=[tuple(entry) for entry in control],
            diff_data=diff_data,
            extra_data=extra_data,
        )

    def apply_patch(self, old_data: bytes, patch: ZbsdiffFile) -> bytes:
        """Apply a frame to old data.

        Args:
            old_data: Original data to patch
            patch: Decoded frame

        Returns:
            Patched data

        Raises:
            DeltaCorruptError: If the frame does not describe ``new_size``
                bytes or overruns its blocks
        """
        if len(old_data) > MAX_FILE_SIZE:
            raise DeltaCorruptError(f"Old data too large: {len(old_data)} > {MAX_FILE_SIZE}")

        self._check_control_entries(patch)
        if patch.new_size == 0:
            return b""

        try:
            return bsdiff4.core.patch(
                old_data,
                patch.new_size,
                patch.control_entries,
                patch.diff_data,
                patch.extra_data,
            )
        except (ValueError, OverflowError, MemoryError) as e:
            raise DeltaCorruptError(f"Patch application failed: {e}") from e

    def _check_control_entries(self, patch: ZbsdiffFile) -> None:
        """Verify block accounting before handing the frame to bsdiff."""
        new_pos = 0
        diff_pos = 0
        extra_pos = 0
        for i, (add_length, copy_length, _offset) in enumerate(patch.control_entries):
            if add_length < 0 or copy_length < 0:
                raise DeltaCorruptError(f"Negative length at control entry {i}")
            diff_pos += add_length
            extra_pos += copy_length
            new_pos += add_length + copy_length
            if diff_pos > len(patch.diff_data):
                raise DeltaCorruptError(f"Diff block overflow at entry {i}")
            if extra_pos > len(patch.extra_data):
                raise DeltaCorruptError(f"Extra block overflow at entry {i}")
            if new_pos > patch.new_size:
                raise DeltaCorruptError(f"New data overflow at entry {i}")
        if new_pos != patch.new_size:
            raise DeltaCorruptError(
                f"Control block covers {new_pos} bytes, header says {patch.new_size}"
            )

    def _decompress(self, data: bytes, block: str) -> bytes:
        if not data:
            return b""
        try:
            return zlib.decompress(data)
        except zlib.error as e:
            raise ValueError(f"Failed to decompress {block} block: {e}") from e

    def _parse_header(self, stream: BinaryIO) -> ZbsdiffHeader:
        header_data = stream.read(HEADER_SIZE)
        if len(header_data) != HEADER_SIZE:
            raise ValueError(f"Header too short: {len(header_data)} < {HEADER_SIZE}")

        control_length, diff_length, new_size = struct.unpack(">QQQ", header_data[8:32])
        return ZbsdiffHeader(
            magic=header_data[0:8],
            control_length=control_length,
            diff_length=diff_length,
            new_size=new_size,
        )

    def _build_header(self, header: ZbsdiffHeader) -> bytes:
        return header.magic + struct.pack(">QQQ", header.control_length, header.diff_length, header.new_size)

    def _parse_control_entries(self, control_data: bytes) -> list[ControlEntry]:
        if len(control_data) % CONTROL_ENTRY_SIZE:
            raise ValueError(f"Control block length {len(control_data)} is not a multiple of {CONTROL_ENTRY_SIZE}")
        return [
            tuple(entry)
            for entry in struct.iter_unpack("<qqq", control_data)
        ]

    def _build_control_entries(self, entries: list[ControlEntry]) -> bytes:
        data = bytearray()
        for add_length, copy_length, offset in entries:
            data.extend(struct.pack("<qqq", add_length, copy_length, offset))
        return bytes(data)


def is_zbsdiff(data: bytes) -> bool:
    """Check whether data starts with a ZBSDIFF1 header."""
    return len(data) >= HEADER_SIZE and data[:8] == MAGIC
