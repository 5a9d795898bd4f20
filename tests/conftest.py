"""Shared fixtures: an in-memory registry serving packed archives."""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from archive import PackageArchive, pack
from common.errors import Conflict, NotFound
from constants import PackageKind
from manifest import DependencyRequirement, Manifest, PackageInfo
from versioning import VersionConstraint, sort_versions

DEFAULT_REPOSITORY = "core"


def requirement(name, constraint, repository=DEFAULT_REPOSITORY, kind="lib"):
    return DependencyRequirement(
        name=name,
        constraint=VersionConstraint(constraint),
        repository=repository,
        kind=PackageKind(kind),
    )


def make_manifest(name=None, version="1.0.0", kind="lib", deps: Sequence = ()):
    """Manifest with ``deps`` given as DependencyRequirement or (name, constraint) pairs."""
    package = None
    if name is not None:
        package = PackageInfo(name=name, kind=PackageKind(kind), version=version)
    dependencies = [d if isinstance(d, DependencyRequirement) else requirement(*d) for d in deps]
    return Manifest(package=package, dependencies=dependencies)


def make_archive(name, version="1.0.0", kind="lib", deps: Sequence = (), files=None) -> PackageArchive:
    if files is None:
        files = [(f"{name}.proto", f'syntax = "proto3";\npackage {name.replace("-", "_")};\n'.encode())]
    return pack(make_manifest(name, version, kind, deps), files)


class FakeRegistry:
    """Implements the registry client interface over in-memory archives.

    ``delays`` maps package names to seconds slept before answering, to make
    fetches complete in a chosen order.
    """

    def __init__(self):
        self.archives: Dict[Tuple[str, str], Dict[str, PackageArchive]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.delays: Dict[str, float] = {}
        self.published: List[Tuple[str, PackageArchive]] = []

    def add(self, name, version="1.0.0", kind="lib", deps: Sequence = (), files=None,
            repository=DEFAULT_REPOSITORY) -> PackageArchive:
        archive = make_archive(name, version, kind, deps, files)
        self.archives.setdefault((repository, name), {})[version] = archive
        return archive

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    async def _pause(self, name):
        await asyncio.sleep(self.delays.get(name, 0))

    async def list_versions(self, repository, name):
        self.calls.append(("list_versions", name, None))
        await self._pause(name)
        versions = self.archives.get((repository, name))
        if not versions:
            raise NotFound(f"{repository}/{name} not found", status=404)
        return [str(v) for v in sort_versions(versions)]

    async def fetch_archive(self, repository, name, version):
        self.calls.append(("fetch_archive", name, version))
        await self._pause(name)
        try:
            return self.archives[(repository, name)][version]
        except KeyError:
            raise NotFound(f"{repository}/{name}@{version} not found", status=404) from None

    async def fetch_manifest(self, repository, name, version):
        return (await self.fetch_archive(repository, name, version)).manifest

    async def publish(self, archive, repository):
        versions = self.archives.setdefault((repository, archive.name), {})
        if archive.version in versions:
            raise Conflict(f"{archive.name}@{archive.version} is already published", status=409)
        versions[archive.version] = archive
        self.published.append((repository, archive))


@pytest.fixture
def registry():
    return FakeRegistry()
