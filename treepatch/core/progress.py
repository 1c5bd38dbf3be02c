"""Progress sinks shared by the codec pipeline and the orchestrator.

The codec reports plain records (:class:`DiffState`,
:class:`CurrentPatchingPath`) through a callable. The orchestrator reports
through a :class:`ProgressReporter`, whose hooks all default to no-ops so
front ends only override what they render. :class:`QueueReporter` turns
the hooks into typed events on a queue for front ends that run the
upgrade on a worker thread.
"""

from __future__ import annotations

import queue
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from treepatch.core.errors import PatcherError
    from treepatch.core.resolver import VersionTransition


@dataclass(frozen=True)
class DiffState:
    """Per-file progress while diffing a tree."""

    done: int = 0
    out_of: int = 0


@dataclass(frozen=True)
class CurrentPatchingPath:
    """Archive entry about to be patched."""

    path: str


DiffCallback = Callable[[DiffState], None]
PatchCallback = Callable[[CurrentPatchingPath], None]


class ProgressReporter:
    """Receives orchestrator progress. Every hook is optional."""

    def on_start_new_version(self, transition: VersionTransition) -> None:
        """Called before a transition's archive is downloaded."""

    def on_patching_file(self, path: str) -> None:
        """Called for each archive entry being patched."""

    def on_version_patch_end(self) -> None:
        """Called once a transition has been merged into the live tree."""

    def on_finish(self) -> None:
        """Called once after the last transition."""

    def on_error(self, error: PatcherError) -> None:
        """Called once, terminally, when the chain fails."""


@dataclass(frozen=True)
class VersionStarted:
    name: str


@dataclass(frozen=True)
class PatchingFile:
    path: str


@dataclass(frozen=True)
class VersionFinished:
    pass


@dataclass(frozen=True)
class Finished:
    pass


@dataclass(frozen=True)
class Failed:
    error: PatcherError


ProgressEvent = VersionStarted | PatchingFile | VersionFinished | Finished | Failed


class QueueReporter(ProgressReporter):
    """Forwards progress as events onto a queue.

    Args:
        events: Queue drained by the front end
        notify: Optional callable invoked after each event, e.g. to wake
            up a UI loop
    """

    def __init__(
        self,
        events: queue.Queue[ProgressEvent],
        notify: Callable[[], None] | None = None,
    ):
        self.events = events
        self.notify = notify

    def _send(self, event: ProgressEvent) -> None:
        self.events.put(event)
        if self.notify is not None:
            self.notify()

    def on_start_new_version(self, transition: VersionTransition) -> None:
        self._send(VersionStarted(transition.new.name))

    def on_patching_file(self, path: str) -> None:
        self._send(PatchingFile(path))

    def on_version_patch_end(self) -> None:
        self._send(VersionFinished())

    def on_finish(self) -> None:
        self._send(Finished())

    def on_error(self, error: PatcherError) -> None:
        self._send(Failed(error))
