"""Binary delta formats.

- ZBSDIFF1: bsdiff frames with zlib-compressed blocks
- TPCHUNK1: chunked sequence of ZBSDIFF1 frames for large files
"""

from treepatch.formats.base import FormatParser
from treepatch.formats.chunked_delta import (
    CHUNK_SIZE,
    ChunkedDeltaHeader,
    ChunkedDeltaHeaderParser,
    apply_chunked_delta,
    write_chunked_delta,
)
from treepatch.formats.zbsdiff import (
    ZbsdiffFile,
    ZbsdiffHeader,
    ZbsdiffParser,
    is_zbsdiff,
)

__all__ = [
    "FormatParser",
    # ZBSDIFF1
    "ZbsdiffFile",
    "ZbsdiffHeader",
    "ZbsdiffParser",
    "is_zbsdiff",
    # Chunked stream
    "CHUNK_SIZE",
    "ChunkedDeltaHeader",
    "ChunkedDeltaHeaderParser",
    "apply_chunked_delta",
    "write_chunked_delta",
]
