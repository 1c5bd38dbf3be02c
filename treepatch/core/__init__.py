"""Core functionality for treepatch.

This module provides shared functionality used across the entire package:
- Type definitions and the error taxonomy
- Utility functions
- Version catalog, resolver and upgrade orchestration
"""

from treepatch.core.types import FailureKind, TargetOS, current_os
from treepatch.core.utils import (
    count_files,
    format_size,
    iter_files,
    sha256_file,
    validate_hash_string,
)

__all__ = [
    # Types
    "FailureKind",
    "TargetOS",
    "current_os",
    # Utils
    "count_files",
    "format_size",
    "iter_files",
    "sha256_file",
    "validate_hash_string",
]
