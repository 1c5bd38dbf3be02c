"""Pytest configuration and shared fixtures for treepatch tests."""

import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from helpers import TreeSpec, write_tree

from treepatch.core import codec


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def make_archive(temp_dir: Path) -> Callable[[TreeSpec, TreeSpec, str], Path]:
    """Factory building a tree delta archive between two tree specs."""

    def _make(old: TreeSpec, new: TreeSpec, name: str) -> Path:
        old_dir = write_tree(temp_dir / "build" / name / "old", old)
        new_dir = write_tree(temp_dir / "build" / name / "new", new)
        destination = temp_dir / f"{name}.tar.xz"
        codec.diff(old_dir, new_dir, destination, preset=0)
        return destination

    return _make


@pytest.fixture
def sample_versions() -> list[TreeSpec]:
    """Four consecutive versions of a small tree."""
    return [
        {"game.dat": b"version one " * 50, "data/levels.bin": b"\x00\x01" * 300},
        {"game.dat": b"version two " * 50, "data/levels.bin": b"\x00\x02" * 300},
        {"game.dat": b"version three " * 50, "data/levels.bin": b"\x00\x03" * 300},
        {"game.dat": b"version four " * 50, "data/levels.bin": b"\x00\x04" * 300},
    ]


# Pytest configuration
def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Add the unit marker to everything not marked otherwise."""
    for item in items:
        if not any(marker.name in ['integration', 'slow'] for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)
