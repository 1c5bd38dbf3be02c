"""Error taxonomy for treepatch.

Every failure that aborts an operation is raised as a subclass of
:class:`PatcherError`, each carrying a :class:`FailureKind` so that front
ends can render a message (and, for version resolution, a remediation
hint) without inspecting exception types.

Per-file skip conditions (a file with no counterpart in the old tree) are
not errors: they are logged as warnings and the enclosing operation
continues.
"""

from __future__ import annotations

import lzma
import tarfile

import httpx
import structlog
import yaml

from treepatch.core.types import FailureKind

logger = structlog.get_logger()

VERSION_HINT = (
    "Verify the integrity of the game files. If that does not help, "
    "wait for a newer patch."
)


class PatcherError(Exception):
    """Base class for all treepatch failures.

    Attributes:
        kind: Failure category
        hint: Optional remediation text for end users
    """

    kind: FailureKind = FailureKind.UNEXPECTED

    def __init__(self, message: str, *, hint: str | None = None):
        self.hint = hint
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def describe(self) -> str:
        """Message followed by the hint, if any, for end users."""
        if self.hint:
            return f"{self.message}\n{self.hint}"
        return self.message


class InputKindMismatchError(PatcherError):
    """Old and new inputs are not both files or both directories."""

    kind = FailureKind.INPUT_KIND_MISMATCH


class PatchIOError(PatcherError):
    """Read, write or permission failure on a participating file."""

    kind = FailureKind.IO_FAILURE

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        hint: str | None = None,
    ):
        self.path = path
        super().__init__(message, hint=hint)


class DeltaCorruptError(PatcherError):
    """Delta data could not be parsed or applied."""

    kind = FailureKind.DELTA_CORRUPT


class NetworkError(PatcherError):
    """Manifest or archive download failed."""

    kind = FailureKind.NETWORK_FAILURE

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
    ):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class ManifestFormatError(PatcherError):
    """Version manifest could not be parsed or is inconsistent."""

    kind = FailureKind.MANIFEST_FORMAT


class NoLinkAvailableError(PatcherError):
    """A requested hop has no resolvable download URL."""

    kind = FailureKind.NO_LINK_AVAILABLE


class VersionUnresolvedError(PatcherError):
    """The installed version could not be determined from file content."""

    kind = FailureKind.VERSION_UNRESOLVED

    def __init__(self, message: str = "Installed version not found", *, hint: str | None = VERSION_HINT):
        super().__init__(message, hint=hint)


class InconsistentGraphError(PatcherError):
    """A graph step has no matching link on its source version.

    The transition graph is derived from the same links it is resolved
    against, so this indicates a bug rather than a missing update.
    """

    kind = FailureKind.INCONSISTENT_GRAPH


class PatchCancelledError(PatcherError):
    """The upgrade chain was cancelled between files or hops."""

    kind = FailureKind.CANCELLED


def classify_error(exc: BaseException) -> PatcherError:
    """Map an arbitrary exception onto the treepatch taxonomy.

    Args:
        exc: Exception raised by a codec, fetch or merge step

    Returns:
        ``exc`` itself if it is already a PatcherError, otherwise a new
        typed error whose message is derived from ``exc``
    """
    if isinstance(exc, PatcherError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return NetworkError(
            f"Download failed: {exc}",
            url=str(exc.request.url),
            status_code=exc.response.status_code,
        )
    if isinstance(exc, httpx.HTTPError):
        return NetworkError(f"Download failed: {exc}")
    if isinstance(exc, (tarfile.TarError, lzma.LZMAError, EOFError)):
        return DeltaCorruptError(f"Delta archive is corrupt: {exc}")
    if isinstance(exc, yaml.YAMLError):
        return ManifestFormatError(f"Manifest is not valid YAML: {exc}")
    if isinstance(exc, OSError):
        path = str(exc.filename) if exc.filename is not None else None
        return PatchIOError(f"I/O error: {exc}", path=path)

    logger.debug("unclassified_error", error_type=type(exc).__name__)
    return PatcherError(str(exc) or type(exc).__name__)
