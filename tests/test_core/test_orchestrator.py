"""Tests for transactional upgrade application."""

import errno
import io
import os
import tarfile
import threading
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from helpers import catalog_from, determinants_for, read_tree, write_tree

from treepatch.core.config import AppConfig
from treepatch.core.errors import (
    DeltaCorruptError,
    ManifestFormatError,
    NetworkError,
    NoLinkAvailableError,
    PatchCancelledError,
    PatchIOError,
    PatcherError,
)
from treepatch.core.fetch import ArchiveFetcher
from treepatch.core.orchestrator import Updater, download_and_patch, merge_staging
from treepatch.core.progress import ProgressReporter
from treepatch.core.resolver import VersionResolver
from treepatch.core.types import FailureKind


class RecordingReporter(ProgressReporter):
    """Reporter remembering every hook call."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.errors: list[PatcherError] = []

    def on_start_new_version(self, transition):
        self.calls.append(("start", transition.new.name))

    def on_patching_file(self, path):
        self.calls.append(("file", path))

    def on_version_patch_end(self):
        self.calls.append(("end",))

    def on_finish(self):
        self.calls.append(("finish",))

    def on_error(self, error):
        self.calls.append(("error", error.kind))
        self.errors.append(error)


def corrupt_second_entry(archive: Path) -> None:
    """Rewrite ``archive`` keeping its first entry and garbling the rest."""
    with tarfile.open(archive, "r:*") as tar:
        members = [(m, tar.extractfile(m).read()) for m in tar.getmembers()]

    with tarfile.open(archive, "w:xz", preset=0) as tar:
        for i, (member, data) in enumerate(members):
            if i > 0:
                data = b"garbage " * 10
                member.size = len(data)
            tar.addfile(member, io.BytesIO(data))


@pytest.fixture
def chain(temp_dir, make_archive, sample_versions):
    """Live tree at version 0, a catalog and archives for three hops."""
    archives = [
        make_archive(sample_versions[i], sample_versions[i + 1], f"hop{i}")
        for i in range(3)
    ]
    catalog = catalog_from([
        {
            "name": f"v{i}",
            "determinants": determinants_for(tree),
            **({"update_link": str(archives[i])} if i < 3 else {}),
        }
        for i, tree in enumerate(sample_versions)
    ])
    live = write_tree(temp_dir / "live", sample_versions[0])
    return live, catalog, archives


class TestDownloadAndPatch:
    """Test download_and_patch behaviour."""

    def test_full_chain(self, temp_dir, chain, sample_versions):
        """Test all hops are applied in order."""
        live, catalog, _ = chain
        transitions = VersionResolver(catalog).upgrade_path(0)
        reporter = RecordingReporter()

        download_and_patch(live, transitions, reporter, staging_root=temp_dir / "staging")

        assert read_tree(live) == sample_versions[3]
        assert reporter.calls == [
            ("start", "v1"), ("file", "game.dat"), ("file", "data/levels.bin"), ("end",),
            ("start", "v2"), ("file", "game.dat"), ("file", "data/levels.bin"), ("end",),
            ("start", "v3"), ("file", "game.dat"), ("file", "data/levels.bin"), ("end",),
            ("finish",),
        ]

    def test_failed_hop_is_not_merged(self, temp_dir, chain, sample_versions):
        """Test a corrupt second hop leaves the tree at the first hop."""
        live, catalog, archives = chain
        corrupt_second_entry(archives[1])
        reporter = RecordingReporter()

        with pytest.raises(DeltaCorruptError):
            download_and_patch(live, VersionResolver(catalog).upgrade_path(0), reporter)

        assert read_tree(live) == sample_versions[1]
        assert reporter.calls[-1] == ("error", FailureKind.DELTA_CORRUPT)
        assert ("finish",) not in reporter.calls
        assert len(reporter.errors) == 1

    def test_cross_device_merge(self, chain, sample_versions):
        """Test EXDEV renames fall back to copying."""
        live, catalog, _ = chain

        def no_rename(src, dst):
            raise OSError(errno.EXDEV, "Invalid cross-device link")

        with patch("treepatch.core.orchestrator.os.replace", side_effect=no_rename):
            download_and_patch(live, VersionResolver(catalog).upgrade_path(0))

        assert read_tree(live) == sample_versions[3]

    def test_other_merge_errors_propagate(self, chain):
        """Test rename failures other than EXDEV abort the update."""
        live, catalog, _ = chain
        reporter = RecordingReporter()

        with patch("treepatch.core.orchestrator.os.replace", side_effect=PermissionError(13, "denied")):
            with pytest.raises(PatchIOError):
                download_and_patch(live, VersionResolver(catalog).upgrade_path(0), reporter)

        assert reporter.calls[-1] == ("error", FailureKind.IO_FAILURE)

    def test_missing_link(self, chain, sample_versions):
        """Test a transition without URL."""
        live, catalog, _ = chain
        transition = VersionResolver(catalog).upgrade_path(0)[0]
        broken = type(transition)(old=transition.old, new=transition.new, url="")
        reporter = RecordingReporter()

        with pytest.raises(NoLinkAvailableError):
            download_and_patch(live, [broken], reporter)

        assert read_tree(live) == sample_versions[0]
        assert reporter.calls == [("start", "v1"), ("error", FailureKind.NO_LINK_AVAILABLE)]

    def test_missing_archive(self, temp_dir, chain, sample_versions):
        """Test an unreadable local archive."""
        live, catalog, archives = chain
        archives[0].unlink()

        with pytest.raises(PatchIOError):
            download_and_patch(live, VersionResolver(catalog).upgrade_path(0))

        assert read_tree(live) == sample_versions[0]

    def test_network_failure(self, chain, sample_versions):
        """Test HTTP errors abort before anything is merged."""
        live, catalog, _ = chain
        transition = VersionResolver(catalog).upgrade_path(0)[0]
        remote = type(transition)(old=transition.old, new=transition.new, url="https://example.com/a.tar.xz")
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(404)))

        with pytest.raises(NetworkError) as exc_info:
            download_and_patch(live, [remote], fetcher=ArchiveFetcher(client=client))

        assert exc_info.value.status_code == 404
        assert read_tree(live) == sample_versions[0]

    def test_cancel_before_start(self, chain, sample_versions):
        """Test a pre-set cancel event stops before the first hop."""
        live, catalog, _ = chain
        cancel = threading.Event()
        cancel.set()
        reporter = RecordingReporter()

        with pytest.raises(PatchCancelledError):
            download_and_patch(live, VersionResolver(catalog).upgrade_path(0), reporter, cancel=cancel)

        assert read_tree(live) == sample_versions[0]
        assert reporter.calls == [("error", FailureKind.CANCELLED)]

    def test_cancel_between_hops(self, chain, sample_versions):
        """Test cancellation keeps every hop merged so far."""
        live, catalog, _ = chain
        cancel = threading.Event()

        class CancelAfterFirst(RecordingReporter):
            def on_version_patch_end(self):
                super().on_version_patch_end()
                cancel.set()

        with pytest.raises(PatchCancelledError):
            download_and_patch(live, VersionResolver(catalog).upgrade_path(0), CancelAfterFirst(), cancel=cancel)

        assert read_tree(live) == sample_versions[1]

    def test_empty_chain_finishes(self, chain):
        """Test nothing to do still reports completion."""
        live, _, _ = chain
        reporter = RecordingReporter()

        download_and_patch(live, [], reporter)

        assert reporter.calls == [("finish",)]

    def test_unclassified_errors_are_wrapped(self, chain):
        """Test arbitrary exceptions reach the reporter as PatcherError."""
        live, catalog, _ = chain
        reporter = RecordingReporter()

        with patch("treepatch.core.orchestrator.apply_tree", side_effect=RuntimeError("boom")):
            with pytest.raises(PatcherError, match="boom"):
                download_and_patch(live, VersionResolver(catalog).upgrade_path(0), reporter)

        assert len(reporter.errors) == 1

    def test_staging_root_cleaned(self, temp_dir, chain):
        """Test staging directories do not outlive their hop."""
        live, catalog, _ = chain
        staging = temp_dir / "staging"

        download_and_patch(live, VersionResolver(catalog).upgrade_path(0), staging_root=staging)

        assert list(staging.iterdir()) == []


class TestMergeStaging:
    """Test merge_staging."""

    def test_creates_parents_and_overwrites(self, temp_dir):
        """Test files land at their relative paths."""
        staging = write_tree(temp_dir / "staging", {"a.txt": b"new a", "deep/er/b.txt": b"new b"})
        live = write_tree(temp_dir / "live", {"a.txt": b"old a", "keep.txt": b"kept"})

        assert merge_staging(staging, live) == 2
        assert read_tree(live) == {"a.txt": b"new a", "deep/er/b.txt": b"new b", "keep.txt": b"kept"}

    def test_cross_device_copy_preserves_content(self, temp_dir):
        """Test the copy fallback produces identical files."""
        staging = write_tree(temp_dir / "staging", {"x.bin": os.urandom(4096)})
        expected = read_tree(staging)
        live = temp_dir / "live"
        live.mkdir()

        with patch("treepatch.core.orchestrator.os.replace",
                   side_effect=OSError(errno.EXDEV, "Invalid cross-device link")):
            merge_staging(staging, live)

        assert read_tree(live) == expected


class TestUpdater:
    """Test the Updater facade."""

    def test_plan_and_run(self, chain, sample_versions):
        """Test a full update through the facade."""
        live, catalog, _ = chain
        updater = Updater(catalog)

        applied = updater.run(live)

        assert [t.new.name for t in applied] == ["v1", "v2", "v3"]
        assert read_tree(live) == sample_versions[3]
        assert updater.plan(live) == []

    def test_plan_with_target(self, chain):
        """Test stopping at an intermediate version."""
        live, catalog, _ = chain

        assert [t.new.name for t in Updater(catalog).plan(live, "v2")] == ["v1", "v2"]
        assert [t.new.name for t in Updater(catalog, use_graph=False).plan(live, "v2")] == ["v1", "v2"]

    def test_plan_unknown_target(self, chain):
        live, catalog, _ = chain

        with pytest.raises(NoLinkAvailableError, match="Unknown target"):
            Updater(catalog).plan(live, "v9")

    def test_from_config_with_manifest_file(self, temp_dir, chain):
        """Test loading the catalog from a local manifest."""
        _, catalog, _ = chain
        manifest = temp_dir / "manifest.json"
        manifest.write_text(catalog.model_dump_json())

        updater = Updater.from_config(AppConfig(use_graph=False), str(manifest))

        assert updater.catalog == catalog
        assert updater.use_graph is False
        updater.close()

    def test_from_config_without_manifest(self):
        with pytest.raises(ManifestFormatError, match="No manifest configured"):
            Updater.from_config(AppConfig())
