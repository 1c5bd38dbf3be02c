"""Tests for the file and tree delta pipeline."""

import io
import tarfile
import threading
from pathlib import Path
from unittest.mock import patch

import pytest
from helpers import read_tree, write_tree

from treepatch.core import codec
from treepatch.core.errors import (
    DeltaCorruptError,
    InputKindMismatchError,
    PatchCancelledError,
)
from treepatch.core.progress import CurrentPatchingPath, DiffState

OLD_TREE = {
    "game.dat": b"old game data " * 200,
    "data/levels.bin": bytes(range(256)) * 20,
    "data/sub/deep.txt": b"deep file v1",
    "removed.txt": b"only in the old tree",
}

NEW_TREE = {
    "game.dat": b"new game data " * 210,
    "data/levels.bin": bytes(range(255, -1, -1)) * 20,
    "data/sub/deep.txt": b"deep file v2 with more text",
    "added.txt": b"only in the new tree",
}


@pytest.fixture
def trees(temp_dir: Path) -> tuple[Path, Path]:
    return write_tree(temp_dir / "old", OLD_TREE), write_tree(temp_dir / "new", NEW_TREE)


def archive_names(path: Path) -> list[str]:
    with tarfile.open(path, "r:*") as tar:
        return tar.getnames()


class TestTreeRoundTrip:
    """Test diffing and patching whole trees."""

    def test_round_trip(self, temp_dir, trees):
        """Test files present in both trees are reconstructed exactly."""
        old_dir, new_dir = trees
        archive = temp_dir / "delta.tar.xz"

        codec.diff(old_dir, new_dir, archive, chunk_size=1000, preset=0)
        written = codec.patch(old_dir, archive, temp_dir / "out")

        result = read_tree(temp_dir / "out")
        assert written == 3
        assert result == {k: v for k, v in NEW_TREE.items() if k in OLD_TREE}

    def test_old_tree_untouched(self, temp_dir, trees):
        """Test patching only writes below the destination."""
        old_dir, new_dir = trees
        archive = temp_dir / "delta.tar.xz"

        codec.diff(old_dir, new_dir, archive, preset=0)
        codec.patch(old_dir, archive, temp_dir / "out")

        assert read_tree(old_dir) == OLD_TREE

    def test_archive_is_xz(self, temp_dir, trees):
        """Test tree archives are xz compressed."""
        old_dir, new_dir = trees
        archive = temp_dir / "delta.tar.xz"

        codec.diff(old_dir, new_dir, archive, preset=0)

        assert archive.read_bytes()[:6] == b"\xfd7zXZ\x00"

    def test_new_file_without_counterpart_skipped(self, temp_dir, trees):
        """Test new-only files are left out of the archive."""
        old_dir, new_dir = trees
        archive = temp_dir / "delta.tar.xz"

        state = codec.diff(old_dir, new_dir, archive, preset=0)

        assert state == DiffState(done=3, out_of=4)
        assert "added.txt" not in archive_names(archive)
        assert "removed.txt" not in archive_names(archive)

    def test_entry_without_old_file_skipped(self, temp_dir, trees):
        """Test entries whose old file vanished are skipped on apply."""
        old_dir, new_dir = trees
        archive = temp_dir / "delta.tar.xz"
        codec.diff(old_dir, new_dir, archive, preset=0)

        (old_dir / "data" / "sub" / "deep.txt").unlink()
        written = codec.patch(old_dir, archive, temp_dir / "out")

        assert written == 2
        assert not (temp_dir / "out" / "data" / "sub" / "deep.txt").exists()

    def test_archive_entries_are_posix_relative(self, temp_dir, trees):
        """Test entry names use forward slashes in sorted walk order."""
        old_dir, new_dir = trees
        archive = temp_dir / "delta.tar.xz"

        codec.diff(old_dir, new_dir, archive, preset=0)

        assert archive_names(archive) == ["game.dat", "data/levels.bin", "data/sub/deep.txt"]

    def test_diff_progress(self, temp_dir, trees):
        """Test diff progress is reported once per completed file."""
        old_dir, new_dir = trees
        states: list[DiffState] = []

        codec.diff(old_dir, new_dir, temp_dir / "delta.tar.xz", states.append, preset=0)

        assert [s.done for s in states] == [1, 2, 3]
        assert all(s.out_of == 4 for s in states)

    def test_patch_progress(self, temp_dir, trees):
        """Test every entry path is reported before it is processed."""
        old_dir, new_dir = trees
        archive = temp_dir / "delta.tar.xz"
        codec.diff(old_dir, new_dir, archive, preset=0)
        seen: list[CurrentPatchingPath] = []

        codec.patch(old_dir, archive, temp_dir / "out", seen.append)

        assert [c.path for c in seen] == archive_names(archive)


class TestSingleFile:
    """Test single-file mode."""

    def test_file_round_trip(self, temp_dir):
        """Test a raw delta between two files."""
        old = temp_dir / "old.bin"
        new = temp_dir / "new.bin"
        old.write_bytes(b"abc" * 1000)
        new.write_bytes(b"abd" * 1000 + b"tail")

        state = codec.diff(old, new, temp_dir / "file.delta", chunk_size=700)
        codec.patch(old, temp_dir / "file.delta", temp_dir / "result.bin")

        assert state == DiffState(done=1, out_of=1)
        assert (temp_dir / "result.bin").read_bytes() == new.read_bytes()

    def test_file_and_directory_mismatch(self, temp_dir, trees):
        """Test mixing a file and a directory."""
        old_dir, _ = trees

        with pytest.raises(InputKindMismatchError):
            codec.diff(old_dir, old_dir / "game.dat", temp_dir / "x.delta")

    def test_patch_file_into_directory(self, temp_dir, trees):
        """Test a file delta cannot target a directory."""
        old_dir, _ = trees
        delta = temp_dir / "x.delta"
        delta.write_bytes(b"")

        with pytest.raises(InputKindMismatchError):
            codec.patch(old_dir / "game.dat", delta, old_dir)

    def test_patch_file_onto_itself(self, temp_dir):
        """Test patching a file in place is refused and leaves it intact."""
        old = temp_dir / "old.bin"
        new = temp_dir / "new.bin"
        old.write_bytes(b"hello world " * 100)
        new.write_bytes(b"hello there " * 100)
        codec.diff(old, new, temp_dir / "file.delta")

        with pytest.raises(InputKindMismatchError, match="is the file being patched"):
            codec.patch(old, temp_dir / "file.delta", temp_dir / "." / "old.bin")

        assert old.read_bytes() == b"hello world " * 100

    def test_failed_patch_leaves_no_file(self, temp_dir):
        """Test a corrupt delta does not leave a partial destination."""
        old = temp_dir / "old.bin"
        new = temp_dir / "new.bin"
        old.write_bytes(b"abc" * 1000)
        new.write_bytes(b"abd" * 1000)
        delta = temp_dir / "file.delta"
        codec.diff(old, new, delta, chunk_size=700)
        delta.write_bytes(delta.read_bytes()[:-10])

        with pytest.raises(DeltaCorruptError):
            codec.patch(old, delta, temp_dir / "result.bin")

        assert sorted(p.name for p in temp_dir.iterdir()) == ["file.delta", "new.bin", "old.bin"]

    def test_failed_diff_keeps_previous_destination(self, temp_dir):
        """Test an interrupted diff does not clobber an existing output."""
        old = temp_dir / "old.bin"
        new = temp_dir / "new.bin"
        old.write_bytes(b"a" * 100)
        new.write_bytes(b"b" * 100)
        destination = temp_dir / "file.delta"
        destination.write_bytes(b"previous delta")

        with patch("treepatch.core.codec.write_chunked_delta", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(OSError):
                codec.diff(old, new, destination)

        assert destination.read_bytes() == b"previous delta"
        assert sorted(p.name for p in temp_dir.iterdir()) == ["file.delta", "new.bin", "old.bin"]


class TestApplyTree:
    """Test apply_tree edge cases."""

    def make_tar(self, entries: dict[str, bytes]) -> tarfile.TarFile:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for name, data in entries.items():
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
        buffer.seek(0)
        return tarfile.open(fileobj=buffer, mode="r")

    @pytest.mark.parametrize("name", ["../escape.txt", "/etc/passwd", "data/../../escape.txt"])
    def test_rejects_escaping_paths(self, temp_dir, trees, name):
        """Test entries leaving the destination are corrupt."""
        old_dir, _ = trees

        with self.make_tar({name: b"x"}) as archive, pytest.raises(DeltaCorruptError, match="escapes"):
            codec.apply_tree(old_dir, archive, temp_dir / "out")

    def test_corrupt_entry(self, temp_dir, trees):
        """Test garbage entry content."""
        old_dir, _ = trees

        with self.make_tar({"game.dat": b"not a delta at all"}) as archive, pytest.raises(DeltaCorruptError):
            codec.apply_tree(old_dir, archive, temp_dir / "out")

    def test_destination_must_be_directory(self, temp_dir, trees):
        """Test a regular file as destination."""
        old_dir, _ = trees
        target = temp_dir / "file"
        target.write_bytes(b"")

        with self.make_tar({}) as archive, pytest.raises(InputKindMismatchError):
            codec.apply_tree(old_dir, archive, target)

    @pytest.mark.parametrize("relative", [".", "data", "data/sub/out"])
    def test_destination_overlapping_old_tree(self, temp_dir, trees, relative):
        """Test writing into the tree being patched is refused."""
        old_dir, new_dir = trees
        archive_path = temp_dir / "delta.tar.xz"
        codec.diff(old_dir, new_dir, archive_path, preset=0)

        with pytest.raises(InputKindMismatchError, match="overlaps"):
            codec.patch(old_dir, archive_path, old_dir / relative)

        assert read_tree(old_dir) == OLD_TREE

    def test_old_tree_inside_destination(self, temp_dir, trees):
        old_dir, _ = trees

        with self.make_tar({}) as archive, pytest.raises(InputKindMismatchError, match="overlaps"):
            codec.apply_tree(old_dir, archive, temp_dir)

    def test_cancel(self, temp_dir, trees):
        """Test cancellation is checked between entries."""
        old_dir, new_dir = trees
        archive_path = temp_dir / "delta.tar.xz"
        codec.diff(old_dir, new_dir, archive_path, preset=0)
        cancel = threading.Event()
        cancel.set()

        with open(archive_path, "rb") as f, codec.open_archive(f) as archive:
            with pytest.raises(PatchCancelledError):
                codec.apply_tree(old_dir, archive, temp_dir / "out", cancel=cancel)

        assert read_tree(temp_dir / "out") == {}

    def test_open_archive_rejects_garbage(self):
        """Test non-archive input."""
        with pytest.raises(DeltaCorruptError, match="Not a delta archive"):
            codec.open_archive(io.BytesIO(b"this is not a tar file" * 40))
