"""Version catalog loaded from a remote YAML manifest.

Manifest layout::

    versions:
      - name: "1.0"
        determinants:
          - file: data/game.dat
            sha256: 3a7b...
        update_link: https://example.com/1.0-to-1.1.tar.xz
      - name: "1.1"
        determinants: [...]
        update_link:
          - to: "1.2"
            link: https://example.com/1.1-to-1.2.tar.xz
          - to: "2.0"
            link: https://example.com/1.1-to-2.0.tar.xz
      - name: "1.2"
        ...

Versions are listed oldest first; list order is the only notion of
"newer". A plain ``update_link`` string upgrades to the next entry, a
list of jump links upgrades to the named targets, and a missing link
marks a terminal version.
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from treepatch.core.errors import ManifestFormatError, PatchIOError
from treepatch.core.utils import validate_hash_string

logger = structlog.get_logger()


class Determinant(BaseModel):
    """File whose digest identifies an installed version."""

    model_config = ConfigDict(frozen=True)

    file: str = Field(..., description="Path relative to the installation root")
    sha256: str = Field(..., description="Expected lowercase hex SHA-256")

    @field_validator("file")
    @classmethod
    def validate_file(cls, v: str) -> str:
        """Reject paths that would leave the installation root."""
        parts = v.replace("\\", "/").split("/")
        if not v or v.startswith("/") or ".." in parts:
            raise ValueError(f"Determinant path must be relative: {v!r}")
        return v

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str) -> str:
        """Normalize and validate the digest."""
        if not validate_hash_string(v, length=64):
            raise ValueError(f"Invalid SHA-256 digest: {v!r}")
        return v.lower()


class JumpLink(BaseModel):
    """Shortcut upgrade to a named, possibly non-adjacent, version."""

    model_config = ConfigDict(frozen=True)

    to: str = Field(..., description="Target version name")
    link: str = Field(..., description="Delta archive URL")


class Version(BaseModel):
    """One released version of the tree."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Version name")
    update_link: str | tuple[JumpLink, ...] | None = Field(
        default=None,
        description="Next-version URL, jump links, or None for a terminal version",
    )
    determinants: tuple[Determinant, ...] = Field(default=(), description="Fingerprint probes")

    @property
    def next_link(self) -> str | None:
        """URL of the plain upgrade to the next catalog entry."""
        return self.update_link if isinstance(self.update_link, str) else None

    @property
    def jump_links(self) -> tuple[JumpLink, ...]:
        return self.update_link if isinstance(self.update_link, tuple) else ()

    @property
    def is_terminal(self) -> bool:
        return not self.update_link


class Catalog(BaseModel):
    """Ordered, immutable list of versions, oldest first."""

    model_config = ConfigDict(frozen=True)

    versions: tuple[Version, ...] = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_links(self) -> Catalog:
        """Check name uniqueness and that every jump target exists."""
        names: set[str] = set()
        for version in self.versions:
            if version.name in names:
                raise ValueError(f"Duplicate version name: {version.name!r}")
            names.add(version.name)

        for version in self.versions:
            for jump in version.jump_links:
                if jump.to not in names:
                    raise ValueError(f"Version {version.name!r} jumps to unknown version {jump.to!r}")
        return self

    def __len__(self) -> int:
        return len(self.versions)

    def __getitem__(self, index: int) -> Version:
        return self.versions[index]

    @property
    def latest(self) -> Version:
        return self.versions[-1]

    def index_of(self, name: str) -> int:
        """Return the catalog index of a version name.

        Raises:
            KeyError: If no version has that name
        """
        for i, version in enumerate(self.versions):
            if version.name == name:
                return i
        raise KeyError(name)

    @classmethod
    def from_yaml(cls, text: str | bytes) -> Catalog:
        """Parse a manifest document.

        Raises:
            ManifestFormatError: If the text is not YAML or does not
                describe a valid catalog
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ManifestFormatError(f"Manifest is not valid YAML: {e}") from e

        if not isinstance(data, dict):
            raise ManifestFormatError("Manifest must be a mapping with a 'versions' list")

        try:
            catalog = cls.model_validate(data)
        except ValidationError as e:
            raise ManifestFormatError(f"Invalid manifest: {e}") from e

        logger.debug("catalog_parsed", versions=len(catalog), latest=catalog.latest.name)
        return catalog

    @classmethod
    def from_file(cls, path: Path) -> Catalog:
        """Load a manifest from a local file."""
        try:
            text = path.read_bytes()
        except OSError as e:
            raise PatchIOError(f"Cannot read manifest {path}: {e}", path=str(path)) from e
        return cls.from_yaml(text)
