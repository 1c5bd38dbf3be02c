"""Installed-version detection and upgrade path planning.

The installed version is identified purely from file content: each
catalog version lists determinants (relative path, SHA-256) and the
newest version whose determinants all match wins. Upgrade paths are
planned over a transition graph derived from the catalog's links, where
every edge costs one hop, so a jump link that skips intermediate versions
beats the equivalent chain of single steps.
"""

from __future__ import annotations

import heapq
import itertools
from collections.abc import Callable
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

import structlog

from treepatch.core.catalog import Catalog, Version
from treepatch.core.errors import (
    InconsistentGraphError,
    NoLinkAvailableError,
    PatchIOError,
    VersionUnresolvedError,
)
from treepatch.core.utils import sha256_file

logger = structlog.get_logger()

# Errors that simply mean "this determinant is not there"
MISSING_FILE_ERRORS = (FileNotFoundError, NotADirectoryError, IsADirectoryError)


@dataclass(frozen=True)
class VersionTransition:
    """One hop of an upgrade path."""

    old: Version
    new: Version
    url: str


class FingerprintCache:
    """Digests of determinant files, computed at most once per path.

    Missing files map to ``None``. Other read errors also map to ``None``
    but are kept in :attr:`errors` so the caller can surface them when no
    version could be matched.
    """

    def __init__(self, root: Path):
        self.root = root
        self.errors: dict[str, OSError] = {}
        self.hashed = 0
        self._digests: dict[str, str | None] = {}

    def digest(self, relative: str) -> str | None:
        if relative in self._digests:
            return self._digests[relative]

        path = self.root / relative
        value: str | None
        try:
            value = sha256_file(path)
            self.hashed += 1
        except MISSING_FILE_ERRORS as e:
            logger.debug("determinant_missing", file=relative, error=str(e))
            value = None
        except OSError as e:
            logger.debug("determinant_unreadable", file=relative, error=str(e))
            self.errors[relative] = e
            value = None

        self._digests[relative] = value
        return value


@dataclass(frozen=True)
class TransitionGraph:
    """Directed graph with one node per catalog index.

    Attributes:
        edges: ``edges[i]`` lists the successors of node ``i`` in link
            order
    """

    edges: tuple[tuple[int, ...], ...]

    @classmethod
    def from_catalog(cls, catalog: Catalog) -> TransitionGraph:
        """Derive the graph from each version's links."""
        name_to_index = {version.name: i for i, version in enumerate(catalog.versions)}
        edges: list[tuple[int, ...]] = []

        for i, version in enumerate(catalog.versions):
            if version.next_link:
                if i + 1 < len(catalog):
                    edges.append((i + 1,))
                else:
                    logger.warning("ignoring_link_past_last_version", version=version.name)
                    edges.append(())
            else:
                edges.append(tuple(name_to_index[jump.to] for jump in version.jump_links))

        logger.debug("transition_graph_built",
                     nodes=len(edges),
                     edges=sum(len(successors) for successors in edges))
        return cls(edges=tuple(edges))

    def __len__(self) -> int:
        return len(self.edges)

    def successors(self, node: int) -> tuple[int, ...]:
        return self.edges[node]

    def shortest_path(
        self,
        source: int,
        target: int,
        heuristic: Callable[[int], int] = lambda _node: 0,
    ) -> list[int] | None:
        """A* search with unit edge weights.

        With the default zero heuristic this finds a minimum-hop path.
        Ties between equal-cost paths are broken by insertion order.

        Returns:
            Node indices from ``source`` to ``target`` inclusive, or None
            if ``target`` is unreachable
        """
        counter = itertools.count()
        cost: dict[int, int] = {source: 0}
        came_from: dict[int, int] = {}
        frontier = [(heuristic(source), next(counter), source)]

        while frontier:
            _, _, node = heapq.heappop(frontier)
            if node == target:
                path = [node]
                while node in came_from:
                    node = came_from[node]
                    path.append(node)
                return path[::-1]

            for successor in self.edges[node]:
                candidate = cost[node] + 1
                if candidate < cost.get(successor, candidate + 1):
                    cost[successor] = candidate
                    came_from[successor] = node
                    heapq.heappush(frontier, (candidate + heuristic(successor), next(counter), successor))

        return None


class VersionResolver:
    """Answers "what is installed" and "how do I get to the latest".

    The transition graph is built on first use and cached for the lifetime
    of the resolver; the catalog it is derived from is immutable.
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    @cached_property
    def graph(self) -> TransitionGraph:
        return TransitionGraph.from_catalog(self.catalog)

    def current_version(self, tree: Path) -> int | None:
        """Detect the installed version from file content.

        Versions are tried newest first. A version matches when every one
        of its determinants exists with the expected digest; the first
        mismatch moves on to the next older version.

        Args:
            tree: Installation root

        Returns:
            Catalog index of the installed version, or None if no version
            matches

        Raises:
            PatchIOError: If nothing matched and at least one determinant
                could not be read for a reason other than being missing
        """
        cache = FingerprintCache(tree)

        for index in range(len(self.catalog) - 1, -1, -1):
            version = self.catalog[index]
            logger.debug("checking_version", version=version.name)
            if all(cache.digest(d.file) == d.sha256 for d in version.determinants):
                logger.info("version_detected", version=version.name, index=index, files_hashed=cache.hashed)
                return index

        if cache.errors:
            file, error = next(iter(cache.errors.items()))
            raise PatchIOError(
                f"Could not read {file} while detecting the installed version: {error}",
                path=str(tree / file),
            ) from error

        logger.info("version_not_found", tree=str(tree), files_hashed=cache.hashed)
        return None

    def require_current_version(self, tree: Path) -> int:
        """Like :meth:`current_version` but raises when nothing matches.

        Raises:
            VersionUnresolvedError: If no version matches
        """
        index = self.current_version(tree)
        if index is None:
            raise VersionUnresolvedError("Your installed version was not found")
        return index

    def is_latest(self, current: int) -> bool:
        return current == len(self.catalog) - 1

    def _transition(self, old_index: int, new_index: int) -> VersionTransition:
        old = self.catalog[old_index]
        new = self.catalog[new_index]

        if new_index == old_index + 1 and old.next_link:
            return VersionTransition(old=old, new=new, url=old.next_link)
        for jump in old.jump_links:
            if jump.to == new.name:
                return VersionTransition(old=old, new=new, url=jump.link)

        raise InconsistentGraphError(
            f"No link from {old.name!r} to {new.name!r} although the graph has that edge"
        )

    def path(self, source: int, target: int) -> list[VersionTransition]:
        """Minimum-hop upgrade path between two catalog indices.

        Raises:
            NoLinkAvailableError: If ``target`` cannot be reached
            InconsistentGraphError: If a graph edge has no backing link
        """
        if not (0 <= source < len(self.catalog) and 0 <= target < len(self.catalog)):
            raise IndexError(f"Version index out of range: {source} -> {target}")
        if source == target:
            return []

        nodes = self.graph.shortest_path(source, target)
        if nodes is None:
            raise NoLinkAvailableError(
                f"No update path from {self.catalog[source].name!r} to {self.catalog[target].name!r}"
            )

        transitions = [self._transition(a, b) for a, b in itertools.pairwise(nodes)]
        logger.info("upgrade_path_planned",
                    source=self.catalog[source].name,
                    target=self.catalog[target].name,
                    hops=[t.new.name for t in transitions])
        return transitions

    def upgrade_path(self, current: int, target: int | None = None) -> list[VersionTransition]:
        """Path from ``current`` to ``target``, by default the newest version."""
        if target is None:
            target = len(self.catalog) - 1
        return self.path(current, target)

    def pending_versions(self, current: int) -> list[Version]:
        """Consecutive versions after ``current`` that still link onward.

        Runs from ``current + 1`` up to, but not including, the first
        version with no outbound link.
        """
        pending: list[Version] = []
        for version in self.catalog.versions[current + 1:]:
            if version.is_terminal:
                break
            pending.append(version)
        return pending

    def linear_transitions(self, current: int) -> list[VersionTransition]:
        """Follow plain next-version links from ``current``.

        Stops at the first version without a plain link, so jump-only
        versions end the run as terminal versions do.
        """
        transitions: list[VersionTransition] = []
        index = current
        while index + 1 < len(self.catalog) and self.catalog[index].next_link:
            transitions.append(self._transition(index, index + 1))
            index += 1
        return transitions
