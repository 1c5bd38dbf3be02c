"""Configuration management for treepatch."""

from __future__ import annotations

import json
import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

from treepatch.core.types import TargetOS, current_os
from treepatch.formats.chunked_delta import CHUNK_SIZE
from treepatch.formats.zbsdiff import MAX_FILE_SIZE

logger = structlog.get_logger()

DEFAULT_CONFIG_FILE = Path.home() / ".config" / "treepatch" / "config.json"


class HTTPConfig(BaseModel):
    """HTTP client configuration for manifest and archive downloads."""

    timeout: float = Field(default=60.0, description="Request timeout in seconds")
    max_retries: int = Field(default=2, description="Retries per request on transport errors")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    user_agent: str = Field(default="treepatch/0.1.0", description="User-Agent header")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate max retries value."""
        if v < 0:
            raise ValueError("Max retries must be non-negative")
        return v


class DefaultPaths(BaseModel):
    """Candidate installation paths for one operating system."""

    target_os: TargetOS = Field(..., description="Operating system these paths apply to")
    possible_paths: list[str] = Field(default_factory=list, description="Paths, '~' allowed")


class AppConfig(BaseModel):
    """Application configuration."""

    config_dir: Path = Field(
        default=Path.home() / ".config" / "treepatch",
        description="Configuration directory"
    )

    # Update source
    manifest_url: str | None = Field(
        default=None,
        description="URL or local path of the version manifest"
    )
    default_paths: list[DefaultPaths] = Field(
        default_factory=list,
        description="Per-OS candidate installation paths"
    )
    use_graph: bool = Field(
        default=True,
        description="Plan upgrades over jump links; False follows plain links only"
    )

    # Codec settings
    chunk_size: int = Field(default=CHUNK_SIZE, description="Delta chunk size in bytes")
    compression_preset: int = Field(default=9, description="xz preset for created archives")
    staging_dir: Path | None = Field(
        default=None,
        description="Parent directory for staging areas; system temp dir if unset"
    )

    http: HTTPConfig = Field(default_factory=HTTPConfig)

    # Output settings
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    def get_default_path(self) -> Path | None:
        """Return the first existing candidate path for the running OS."""
        running = current_os()
        for entry in self.default_paths:
            if entry.target_os != running:
                continue
            for candidate in entry.possible_paths:
                path = Path(os.path.expanduser(candidate))
                if path.exists():
                    logger.debug("default_path_found", path=str(path))
                    return path
        return None

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = DEFAULT_CONFIG_FILE

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

        # Return defaults
        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Validate chunk size fits a single delta frame."""
        if v <= 0 or v > MAX_FILE_SIZE:
            raise ValueError(f"Chunk size must be between 1 and {MAX_FILE_SIZE}")
        return v

    @field_validator("compression_preset")
    @classmethod
    def validate_compression_preset(cls, v: int) -> int:
        """Validate xz preset."""
        if not 0 <= v <= 9:
            raise ValueError("Compression preset must be between 0 and 9")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
