"""Tree and manifest builders shared by the test modules."""

import hashlib
from pathlib import Path

import yaml

from treepatch.core.catalog import Catalog

TreeSpec = dict[str, bytes]


def write_tree(root: Path, files: TreeSpec) -> Path:
    """Create ``files`` (relative POSIX path -> content) below ``root``."""
    root.mkdir(parents=True, exist_ok=True)
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


def read_tree(root: Path) -> TreeSpec:
    """Inverse of :func:`write_tree`."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def catalog_from(versions: list[dict]) -> Catalog:
    """Build a catalog from plain manifest dictionaries."""
    return Catalog.from_yaml(yaml.safe_dump({"versions": versions}))


def determinants_for(tree: TreeSpec, files: list[str] | None = None) -> list[dict]:
    names = files if files is not None else ["game.dat"]
    return [{"file": name, "sha256": sha256(tree[name])} for name in names]
