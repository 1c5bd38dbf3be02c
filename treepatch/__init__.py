"""treepatch - incremental binary updates for installed file trees.

A version catalog identifies installed versions by file content and links
them with delta archives. treepatch detects the installed version, plans
the shortest chain of upgrades and applies it transactionally, one hop
at a time.

Key modules:
- core: Catalog, resolver, codec pipeline, orchestrator and shared helpers
- formats: ZBSDIFF1 frames and chunked delta streams
- commands: CLI command implementations
"""

__version__ = "0.1.0"
__author__ = "treepatch developers"

# Re-export commonly used types
from treepatch.core.types import FailureKind, TargetOS

__all__ = [
    "__version__",
    "__author__",
    "FailureKind",
    "TargetOS",
]
