"""CLI command implementations for treepatch.

This module contains all command-line interface implementations:
- diff: Create a delta between two files or two trees
- patch: Apply a delta to a file or tree
- status: Show the installed version and pending updates
- update: Download and apply pending updates
"""

from treepatch.commands.diff import diff
from treepatch.commands.patch import patch
from treepatch.commands.update import status, update

__all__ = ["diff", "patch", "status", "update"]
