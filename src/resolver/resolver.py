"""Dependency resolver.

Resolution proceeds level by level from the root manifest's direct
requirements. Within a level, requirements are grouped by package name and
processed in sorted order; the chosen version is the highest published
version that satisfies every constraint of the group. A package chosen in an
earlier level is never renegotiated: a later requirement it does not satisfy
is a VersionConflict.

Registry calls for one level run concurrently (bounded by the client), and
results are consumed in name order, so the outcome never depends on which
fetch finished first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from archive import PackageArchive
from common.aio import gather_all
from common.errors import (
    CyclicDependency,
    KindViolation,
    NotFound,
    UnresolvableRequirement,
    VersionConflict,
)
from common.logging_utils import extra_context, is_debug_enabled
from constants import PackageKind
from manifest import DependencyRequirement, Manifest
from versioning import VersionConstraint, select_highest

from .graph import DependencyGraph, ResolvedNode

logger = logging.getLogger(__name__)

ROOT_LABEL = "<root>"


@dataclass(frozen=True)
class PendingRequirement:
    """A requirement waiting in the frontier, with the chain of packages that led to it."""
    requirement: DependencyRequirement
    chain: Tuple[str, ...]

    @property
    def name(self) -> str:
        return self.requirement.name

    @property
    def constraint(self) -> VersionConstraint:
        return self.requirement.constraint

    @property
    def repository(self) -> str:
        return self.requirement.repository

    @property
    def parent(self) -> str:
        return self.chain[-1]

    def sort_key(self) -> Tuple[str, Tuple[str, ...], str, str]:
        return (self.name, self.chain, self.constraint.raw, self.repository)

    def __str__(self) -> str:
        return str(self.requirement)


@dataclass
class _Choice:
    version: str
    archive: PackageArchive
    demands: List[PendingRequirement] = field(default_factory=list)

    @property
    def kind(self) -> PackageKind:
        return self.archive.manifest.package.kind

    @property
    def repository(self) -> str:
        return self.demands[0].repository


@dataclass
class Resolution:
    """Outcome of one resolution pass.

    ``archives`` keeps the downloaded archives so an install in the same run
    does not fetch them again.
    """
    graph: DependencyGraph
    archives: Dict[str, PackageArchive]


class Resolver:
    """Resolves a root manifest into a DependencyGraph through a registry client."""

    def __init__(self, client):
        """Initialize the resolver.

        Args:
            client: Object providing ``list_versions(repository, name)`` and
                ``fetch_archive(repository, name, version)`` coroutines.
        """
        self._client = client

    async def resolve(self, manifest: Manifest) -> Resolution:
        """Run one resolution pass.

        Raises:
            VersionConflict, CyclicDependency, UnresolvableRequirement,
            KindViolation, RegistryUnavailable, and integrity errors from
            archive decoding.
        """
        root = manifest.name or ROOT_LABEL
        root_kind = manifest.kind
        chosen: Dict[str, _Choice] = {}
        edges: Dict[str, Set[str]] = {root: set()}

        frontier = [PendingRequirement(dep, (root,)) for dep in manifest.dependencies]
        level = 0
        while frontier:
            frontier.sort(key=PendingRequirement.sort_key)
            groups: Dict[str, List[PendingRequirement]] = {}
            for pending in frontier:
                if pending.name in pending.chain:
                    start = pending.chain.index(pending.name)
                    raise CyclicDependency(pending.chain[start:] + (pending.name,))
                edges.setdefault(pending.parent, set()).add(pending.name)
                if pending.name in chosen:
                    self._accept_existing(chosen[pending.name], pending)
                    self._check_kind(pending, chosen[pending.name].kind, chosen, root_kind)
                    continue
                groups.setdefault(pending.name, []).append(pending)

            if is_debug_enabled(logger):
                logger.debug(
                    "Resolving level",
                    extra=extra_context(
                        event="resolve_level",
                        component="resolver",
                        level=level,
                        count=len(groups),
                    ),
                )

            names = sorted(groups)
            for name in names:
                self._check_repositories(name, groups[name])
            listings = await gather_all(
                self._list_versions(groups[name][0]) for name in names
            )
            selections = [
                self._select(name, groups[name], versions)
                for name, versions in zip(names, listings)
            ]
            archives = await gather_all(
                self._client.fetch_archive(groups[name][0].repository, name, version)
                for name, version in zip(names, selections)
            )

            next_frontier: List[PendingRequirement] = []
            for name, version, archive in zip(names, selections, archives):
                group = groups[name]
                kind = archive.manifest.package.kind
                for pending in group:
                    self._check_kind(pending, kind, chosen, root_kind)
                chosen[name] = _Choice(version=version, archive=archive, demands=list(group))
                logger.debug("Selected %s@%s", name, version)
                child_chain = group[0].chain + (name,)
                next_frontier.extend(
                    PendingRequirement(dep, child_chain) for dep in archive.manifest.dependencies
                )
            frontier = next_frontier
            level += 1

        graph = self._build_graph(root, chosen, edges)
        cycle = graph.find_cycle()
        if cycle:
            raise CyclicDependency(cycle)
        logger.info("Resolved %d package(s)", len(graph))
        return Resolution(graph=graph, archives={name: c.archive for name, c in chosen.items()})

    async def _list_versions(self, pending: PendingRequirement) -> List[str]:
        try:
            return await self._client.list_versions(pending.repository, pending.name)
        except NotFound as e:
            raise UnresolvableRequirement(pending) from e

    @staticmethod
    def _check_repositories(name: str, group: Sequence[PendingRequirement]) -> None:
        first = group[0]
        for other in group[1:]:
            if other.repository != first.repository:
                raise VersionConflict(
                    name, first, other,
                    reason=f"required from repositories '{first.repository}' and '{other.repository}'",
                )

    @staticmethod
    def _select(name: str, group: Sequence[PendingRequirement], versions: Sequence[str]) -> str:
        selected = select_highest(versions, [p.constraint for p in group])
        if selected is not None:
            return str(selected)
        for pending in group:
            if select_highest(versions, [pending.constraint]) is None:
                raise UnresolvableRequirement(pending, versions)
        for i, first in enumerate(group):
            for second in group[i + 1:]:
                if select_highest(versions, [first.constraint, second.constraint]) is None:
                    raise VersionConflict(name, first, second, reason="no version satisfies both")
        raise VersionConflict(
            name, group[0], group[-1], reason="no version satisfies all requirements together"
        )

    @staticmethod
    def _accept_existing(choice: _Choice, pending: PendingRequirement) -> None:
        first = choice.demands[0]
        if pending.repository != choice.repository:
            raise VersionConflict(
                pending.name, first, pending,
                reason=f"required from repositories '{choice.repository}' and '{pending.repository}'",
            )
        if not pending.constraint.matches(choice.version):
            raise VersionConflict(
                pending.name, first, pending,
                reason=f"{pending.name}@{choice.version} was already selected",
            )
        choice.demands.append(pending)

    @staticmethod
    def _check_kind(
        pending: PendingRequirement,
        kind: PackageKind,
        chosen: Dict[str, _Choice],
        root_kind: Optional[PackageKind],
    ) -> None:
        parent = pending.parent
        parent_kind = chosen[parent].kind if parent in chosen else root_kind
        if parent_kind is PackageKind.LIBRARY and kind is PackageKind.API:
            raise KindViolation(
                f"Library package '{parent}' cannot depend on api package '{pending.name}'"
            )

    @staticmethod
    def _build_graph(
        root: str, chosen: Dict[str, _Choice], edges: Dict[str, Set[str]]
    ) -> DependencyGraph:
        dependents: Dict[str, Set[str]] = {name: set() for name in chosen}
        for parent, children in edges.items():
            if parent == root:
                continue
            for child in children:
                dependents[child].add(parent)
        nodes = [
            ResolvedNode(
                name=name,
                version=choice.version,
                kind=choice.kind,
                digest=choice.archive.digest,
                repository=choice.repository,
                dependencies=tuple(sorted(edges.get(name, ()))),
                dependents=tuple(sorted(dependents[name])),
            )
            for name, choice in chosen.items()
        ]
        return DependencyGraph(nodes, roots=edges.get(root, ()))
