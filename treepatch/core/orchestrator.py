"""Transactional application of an upgrade chain to a live tree.

Each hop is downloaded, decompressed and fully patched into a private
staging directory before a single byte of the live tree is touched. Only
after the codec step for that hop succeeded is the staged output moved
into place, so a failed hop leaves the tree exactly at the previous hop's
version.
"""

from __future__ import annotations

import errno
import os
import shutil
import tempfile
import threading
from pathlib import Path

import structlog

from treepatch.core.catalog import Catalog
from treepatch.core.codec import apply_tree, check_cancelled, open_archive
from treepatch.core.config import AppConfig
from treepatch.core.errors import ManifestFormatError, NoLinkAvailableError, classify_error
from treepatch.core.fetch import ArchiveFetcher, load_catalog
from treepatch.core.progress import CurrentPatchingPath, ProgressReporter
from treepatch.core.resolver import VersionResolver, VersionTransition
from treepatch.core.utils import iter_files, relative_posix

logger = structlog.get_logger()


def merge_staging(staging: Path, live_tree: Path) -> int:
    """Move every staged file over its live counterpart.

    Files are renamed where possible; across filesystems the rename fails
    with ``EXDEV`` and the file is copied instead.

    Returns:
        Number of files merged
    """
    merged = 0
    for staged in iter_files(staging):
        relative = relative_posix(staged, staging)
        target = live_tree / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(staged, target)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            logger.debug("cross_device_merge", path=relative)
            shutil.copy2(staged, target)
        merged += 1

    logger.debug("staging_merged", files=merged, tree=str(live_tree))
    return merged


def _apply_transition(
    live_tree: Path,
    transition: VersionTransition,
    reporter: ProgressReporter,
    fetcher: ArchiveFetcher,
    staging_root: Path | None,
    cancel: threading.Event | None,
) -> None:
    if not transition.url:
        raise NoLinkAvailableError(f"Version {transition.old.name!r} has no update link")

    if staging_root is not None:
        staging_root.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix="treepatch-", dir=staging_root) as staging_dir, \
            tempfile.TemporaryFile(dir=staging_root) as download:
        staging = Path(staging_dir)

        size = fetcher.fetch_to_file(transition.url, download)
        logger.info("archive_downloaded", version=transition.new.name, size=size)
        download.seek(0)

        def forward(current: CurrentPatchingPath) -> None:
            reporter.on_patching_file(current.path)

        with open_archive(download) as archive:
            apply_tree(live_tree, archive, staging, forward, cancel=cancel)

        check_cancelled(cancel)
        merge_staging(staging, live_tree)


def download_and_patch(
    live_tree: Path,
    transitions: list[VersionTransition],
    reporter: ProgressReporter | None = None,
    fetcher: ArchiveFetcher | None = None,
    *,
    staging_root: Path | None = None,
    cancel: threading.Event | None = None,
) -> None:
    """Apply ``transitions`` to ``live_tree`` one hop at a time.

    Args:
        live_tree: Installation root, patched in place
        transitions: Hops in application order, as planned by the resolver
        reporter: Progress sink; a silent one is used if omitted
        fetcher: Fetcher for the delta archives; a fresh one is created
            and closed if omitted
        staging_root: Parent directory for per-hop staging areas
        cancel: Optional event checked between hops and between files

    Raises:
        PatcherError: The first failure, after ``reporter.on_error`` was
            called with it. Hops merged before the failure stay merged.
    """
    reporter = reporter or ProgressReporter()
    owns_fetcher = fetcher is None
    fetcher = fetcher or ArchiveFetcher()

    try:
        for transition in transitions:
            check_cancelled(cancel)
            logger.info("transition_started", old=transition.old.name, new=transition.new.name)
            reporter.on_start_new_version(transition)

            _apply_transition(live_tree, transition, reporter, fetcher, staging_root, cancel)

            logger.info("transition_merged", version=transition.new.name)
            reporter.on_version_patch_end()
    except Exception as e:
        error = classify_error(e)
        logger.error("update_failed", kind=str(error.kind), error=error.message)
        reporter.on_error(error)
        if error is e:
            raise
        raise error from e
    finally:
        if owns_fetcher:
            fetcher.close()

    logger.info("update_finished", hops=len(transitions))
    reporter.on_finish()


class Updater:
    """Detect, plan and apply in one object.

    Example:
        updater = Updater.from_config(AppConfig.load())
        updater.run(Path("~/Games/example").expanduser())
    """

    def __init__(
        self,
        catalog: Catalog,
        fetcher: ArchiveFetcher | None = None,
        *,
        staging_root: Path | None = None,
        use_graph: bool = True,
    ):
        self.catalog = catalog
        self.resolver = VersionResolver(catalog)
        self.fetcher = fetcher
        self.staging_root = staging_root
        self.use_graph = use_graph

    @classmethod
    def from_config(cls, config: AppConfig, manifest: str | None = None) -> Updater:
        """Load the catalog named by ``manifest`` or ``config.manifest_url``.

        Raises:
            ManifestFormatError: If no manifest is configured or it is invalid
        """
        source = manifest or config.manifest_url
        if not source:
            raise ManifestFormatError("No manifest configured; pass --manifest or set manifest_url")

        fetcher = ArchiveFetcher(config.http)
        catalog = load_catalog(source, fetcher)
        return cls(catalog, fetcher, staging_root=config.staging_dir, use_graph=config.use_graph)

    def plan(self, tree: Path, target: str | None = None) -> list[VersionTransition]:
        """Transitions that bring ``tree`` to ``target`` or the newest version.

        Raises:
            VersionUnresolvedError: If the installed version is unknown
            NoLinkAvailableError: If ``target`` cannot be reached
        """
        return self.plan_from(self.resolver.require_current_version(tree), target)

    def plan_from(self, current: int, target: str | None = None) -> list[VersionTransition]:
        """Like :meth:`plan` for an already detected catalog index."""
        target_index = None
        if target is not None:
            try:
                target_index = self.catalog.index_of(target)
            except KeyError:
                raise NoLinkAvailableError(f"Unknown target version {target!r}") from None

        if self.use_graph:
            return self.resolver.upgrade_path(current, target_index)

        transitions = self.resolver.linear_transitions(current)
        if target_index is None:
            return transitions
        for i, transition in enumerate(transitions):
            if transition.new.name == target:
                return transitions[:i + 1]
        if target_index == current:
            return []
        raise NoLinkAvailableError(f"No linear update path to {target!r}")

    def run(
        self,
        tree: Path,
        reporter: ProgressReporter | None = None,
        *,
        target: str | None = None,
        cancel: threading.Event | None = None,
    ) -> list[VersionTransition]:
        """Plan and apply; returns the applied transitions."""
        transitions = self.plan(tree, target)
        download_and_patch(
            tree,
            transitions,
            reporter,
            self.fetcher,
            staging_root=self.staging_root,
            cancel=cancel,
        )
        return transitions

    def close(self) -> None:
        if self.fetcher is not None:
            self.fetcher.close()
