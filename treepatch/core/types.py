"""Core type definitions for treepatch."""

import sys
from enum import StrEnum


class FailureKind(StrEnum):
    """Failure categories surfaced to front ends."""
    INPUT_KIND_MISMATCH = "input_kind_mismatch"
    CONTENT_MISSING = "content_missing"
    IO_FAILURE = "io_failure"
    DELTA_CORRUPT = "delta_corrupt"
    NETWORK_FAILURE = "network_failure"
    MANIFEST_FORMAT = "manifest_format"
    NO_LINK_AVAILABLE = "no_link_available"
    VERSION_UNRESOLVED = "version_unresolved"
    INCONSISTENT_GRAPH = "inconsistent_graph"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class TargetOS(StrEnum):
    """Operating system names used by default-path entries."""
    LINUX = "linux"
    WINDOWS = "windows"
    MACOS = "macos"
    FREEBSD = "freebsd"
    OTHER = "other"


def current_os() -> TargetOS:
    """Map ``sys.platform`` onto the names used in configuration files."""
    if sys.platform.startswith("linux"):
        return TargetOS.LINUX
    if sys.platform in ("win32", "cygwin"):
        return TargetOS.WINDOWS
    if sys.platform == "darwin":
        return TargetOS.MACOS
    if sys.platform.startswith("freebsd"):
        return TargetOS.FREEBSD
    return TargetOS.OTHER
