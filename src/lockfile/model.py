"""Proto.lock model.

The lockfile is a TOML document with a format version and one
``[[package]]`` table per resolved package, sorted by name. It is written
with tomlkit, so writing an unchanged lockfile reproduces the same bytes.
"""

from __future__ import annotations

import enum
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import tomlkit

try:
    import tomllib as toml  # type: ignore
except ImportError:  # Python < 3.11
    import tomli as toml  # type: ignore

from common.errors import MalformedLockfile, MalformedManifest, UnsupportedLockfileVersion
from constants import Constants, PackageKind
from manifest import Manifest
from manifest.parser import validate_name, validate_repository
from resolver import DependencyGraph, ResolvedNode
from versioning import is_valid_version

logger = logging.getLogger(__name__)


class LockStatus(enum.Enum):
    """Result of checking a lockfile against the manifest."""
    MATCH = "match"
    STALE = "stale"


@dataclass(frozen=True)
class LockedPackage:
    """Snapshot of one ResolvedNode."""
    name: str
    version: str
    kind: PackageKind
    repository: str
    digest: str
    dependencies: Tuple[str, ...] = ()

    @classmethod
    def from_node(cls, node: ResolvedNode) -> "LockedPackage":
        return cls(
            name=node.name,
            version=node.version,
            kind=node.kind,
            repository=node.repository,
            digest=node.digest,
            dependencies=tuple(sorted(node.dependencies)),
        )


def _require(entry: Dict[str, Any], key: str, index: int) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedLockfile(f"package #{index + 1}: missing or invalid '{key}'")
    return value


class Lockfile:
    """Persisted resolution result."""

    def __init__(self, packages: Iterable[LockedPackage], version: int = Constants.LOCKFILE_FORMAT_VERSION):
        ordered: Dict[str, LockedPackage] = {}
        for pkg in packages:
            if pkg.name in ordered:
                raise MalformedLockfile(f"Duplicate locked package '{pkg.name}'")
            ordered[pkg.name] = pkg
        self.version = version
        self.packages: List[LockedPackage] = [ordered[name] for name in sorted(ordered)]

    def __eq__(self, other) -> bool:
        if not isinstance(other, Lockfile):
            return NotImplemented
        return self.version == other.version and self.packages == other.packages

    def __repr__(self) -> str:
        return f"Lockfile(version={self.version}, packages={len(self.packages)})"

    def get(self, name: str) -> Optional[LockedPackage]:
        for pkg in self.packages:
            if pkg.name == name:
                return pkg
        return None

    @classmethod
    def from_graph(cls, graph: DependencyGraph) -> "Lockfile":
        return cls(LockedPackage.from_node(node) for node in graph)

    def to_graph(self, manifest: Manifest) -> DependencyGraph:
        """Rebuild a DependencyGraph, taking the roots from the manifest's direct requirements."""
        dependents: Dict[str, List[str]] = {pkg.name: [] for pkg in self.packages}
        for pkg in self.packages:
            for dep in pkg.dependencies:
                if dep in dependents:
                    dependents[dep].append(pkg.name)
        nodes = [
            ResolvedNode(
                name=pkg.name,
                version=pkg.version,
                kind=pkg.kind,
                digest=pkg.digest,
                repository=pkg.repository,
                dependencies=pkg.dependencies,
                dependents=tuple(sorted(dependents[pkg.name])),
            )
            for pkg in self.packages
        ]
        roots = [dep.name for dep in manifest.dependencies if dep.name in dependents]
        return DependencyGraph(nodes, roots=roots)

    def matches(self, graph: DependencyGraph) -> bool:
        """True when the lockfile records exactly this graph."""
        return self == Lockfile.from_graph(graph)

    def verify(self, manifest: Manifest) -> LockStatus:
        """Check whether the locked versions still satisfy the manifest.

        Stale when a direct requirement is missing, comes from another
        repository or is not satisfied by the locked version, when a locked
        dependency edge points at an unlocked package, or when locked packages
        are no longer reachable from the direct requirements.
        """
        locked = {pkg.name: pkg for pkg in self.packages}
        for dep in manifest.dependencies:
            pkg = locked.get(dep.name)
            if pkg is None:
                logger.info("Lockfile is stale: %s is not locked", dep.name)
                return LockStatus.STALE
            if pkg.repository != dep.repository:
                logger.info("Lockfile is stale: %s moved to repository %s", dep.name, dep.repository)
                return LockStatus.STALE
            if not dep.constraint.matches(pkg.version):
                logger.info(
                    "Lockfile is stale: locked %s@%s does not satisfy %s",
                    dep.name, pkg.version, dep.constraint,
                )
                return LockStatus.STALE

        seen = set()
        stack = [dep.name for dep in manifest.dependencies]
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            if name not in locked:
                logger.info("Lockfile is stale: dependency %s is not locked", name)
                return LockStatus.STALE
            seen.add(name)
            stack.extend(locked[name].dependencies)
        if seen != set(locked):
            logger.info(
                "Lockfile is stale: unused package(s) %s", ", ".join(sorted(set(locked) - seen))
            )
            return LockStatus.STALE
        return LockStatus.MATCH

    def dumps(self) -> str:
        """Serialize to the line-oriented TOML format."""
        doc = tomlkit.document()
        doc.add("version", self.version)
        tables = tomlkit.aot()
        for pkg in self.packages:
            table = tomlkit.table()
            table.add("name", pkg.name)
            table.add("version", pkg.version)
            table.add("kind", pkg.kind.value)
            table.add("repository", pkg.repository)
            table.add("digest", pkg.digest)
            deps = tomlkit.array()
            deps.extend(pkg.dependencies)
            table.add("dependencies", deps)
            tables.append(table)
        if self.packages:
            doc.add("package", tables)
        return tomlkit.dumps(doc)

    @classmethod
    def loads(cls, text: str) -> "Lockfile":
        """Parse lockfile text.

        Raises:
            MalformedLockfile: invalid TOML or entries.
            UnsupportedLockfileVersion: written by a newer format version.
        """
        try:
            data = toml.loads(text)
        except toml.TOMLDecodeError as e:
            raise MalformedLockfile(f"Invalid TOML: {e}") from e

        version = data.get("version")
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise MalformedLockfile(f"Invalid lockfile format version {version!r}")
        if version > Constants.LOCKFILE_FORMAT_VERSION:
            raise UnsupportedLockfileVersion(version, Constants.LOCKFILE_FORMAT_VERSION)

        entries = data.get("package", [])
        if not isinstance(entries, list):
            raise MalformedLockfile("'package' must be an array of tables")
        packages = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise MalformedLockfile(f"package #{index + 1}: expected a table")
            version_str = _require(entry, "version", index)
            if not is_valid_version(version_str):
                raise MalformedLockfile(f"package #{index + 1}: invalid version {version_str!r}")
            kind_str = _require(entry, "kind", index)
            try:
                kind = PackageKind(kind_str)
            except ValueError as e:
                raise MalformedLockfile(f"package #{index + 1}: invalid kind {kind_str!r}") from e
            digest = _require(entry, "digest", index)
            if not digest.startswith(f"{Constants.DIGEST_ALGORITHM}:"):
                raise MalformedLockfile(f"package #{index + 1}: unsupported digest {digest!r}")
            where = f"package #{index + 1}"
            try:
                name = validate_name(_require(entry, "name", index), where)
                repository = validate_repository(_require(entry, "repository", index), where)
            except MalformedManifest as e:
                raise MalformedLockfile(str(e)) from e
            dependencies = entry.get("dependencies", [])
            if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
                raise MalformedLockfile(f"package #{index + 1}: 'dependencies' must be a list of names")
            packages.append(
                LockedPackage(
                    name=name,
                    version=version_str,
                    kind=kind,
                    repository=repository,
                    digest=digest,
                    dependencies=tuple(sorted(dependencies)),
                )
            )
        return cls(packages, version=version)

    @classmethod
    def load(cls, path: Optional[str] = None) -> Optional["Lockfile"]:
        """Read the lockfile at ``path``; None when it does not exist."""
        path = path or Constants.LOCKFILE_FILE
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return cls.loads(fh.read())
        except FileNotFoundError:
            return None

    def write(self, path: Optional[str] = None) -> None:
        """Atomically replace the lockfile at ``path``."""
        path = path or Constants.LOCKFILE_FILE
        directory = os.path.dirname(os.path.abspath(path))
        fd, tmp_path = tempfile.mkstemp(prefix=".Proto.lock.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                fh.write(self.dumps())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
