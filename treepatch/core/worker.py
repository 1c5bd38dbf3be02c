"""Run an upgrade chain on a background thread.

Front ends that keep a UI loop responsive start a :class:`PatchWorker`
and periodically :meth:`~PatchWorker.drain` its event queue. Exactly one
terminal event, :class:`~treepatch.core.progress.Finished` or
:class:`~treepatch.core.progress.Failed`, is emitted per run.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from pathlib import Path

import structlog

from treepatch.core.errors import PatcherError
from treepatch.core.fetch import ArchiveFetcher
from treepatch.core.orchestrator import download_and_patch
from treepatch.core.progress import ProgressEvent, QueueReporter
from treepatch.core.resolver import VersionTransition

logger = structlog.get_logger()


class PatchWorker(threading.Thread):
    """Thread applying ``transitions`` to ``live_tree``.

    Args:
        live_tree: Installation root
        transitions: Planned hops
        fetcher: Optional fetcher shared with the caller
        staging_root: Parent directory for staging areas
        notify: Called from the worker thread after every event
    """

    def __init__(
        self,
        live_tree: Path,
        transitions: list[VersionTransition],
        fetcher: ArchiveFetcher | None = None,
        *,
        staging_root: Path | None = None,
        notify: Callable[[], None] | None = None,
    ):
        super().__init__(name="treepatch-worker", daemon=True)
        self.live_tree = live_tree
        self.transitions = transitions
        self.fetcher = fetcher
        self.staging_root = staging_root
        self.events: queue.Queue[ProgressEvent] = queue.Queue()
        self.reporter = QueueReporter(self.events, notify)
        self.error: PatcherError | None = None
        self._cancel = threading.Event()

    def run(self) -> None:
        try:
            download_and_patch(
                self.live_tree,
                self.transitions,
                self.reporter,
                self.fetcher,
                staging_root=self.staging_root,
                cancel=self._cancel,
            )
        except PatcherError as e:
            # Already delivered as a Failed event
            self.error = e
            logger.debug("worker_failed", kind=str(e.kind))

    def cancel(self) -> None:
        """Request a stop at the next file or hop boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def drain(self) -> list[ProgressEvent]:
        """Return all queued events without blocking."""
        events: list[ProgressEvent] = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except queue.Empty:
                return events
