"""Data models for package manifests."""

from dataclasses import dataclass, field
from typing import List, Optional

from constants import PackageKind
from versioning import VersionConstraint


@dataclass(frozen=True)
class PackageIdentity:
    """Unique name of a package within a registry, plus its kind."""
    name: str
    kind: PackageKind

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class PackageVersion:
    """A released version of one identity."""
    identity: PackageIdentity
    version: str

    def __str__(self) -> str:
        return f"{self.identity.name}@{self.version}"


@dataclass(frozen=True)
class DependencyRequirement:
    """A dependency declared in a manifest."""
    name: str
    constraint: VersionConstraint
    repository: str  # registry repository the package is published to
    kind: PackageKind = PackageKind.LIBRARY

    def __str__(self) -> str:
        return f"{self.repository}/{self.name}@{self.constraint}"


@dataclass(frozen=True)
class PackageInfo:
    """The [package] section: identity and release metadata of a publishable package."""
    name: str
    kind: PackageKind
    version: str
    description: Optional[str] = None

    @property
    def identity(self) -> PackageIdentity:
        return PackageIdentity(self.name, self.kind)

    @property
    def package_version(self) -> PackageVersion:
        return PackageVersion(self.identity, self.version)


@dataclass
class Manifest:
    """Descriptor of one package.

    ``package`` is None for consumer-only projects that declare dependencies
    but publish nothing. Dependency order is kept for stable serialization and
    has no meaning for resolution.
    """
    package: Optional[PackageInfo] = None
    dependencies: List[DependencyRequirement] = field(default_factory=list)

    @property
    def name(self) -> Optional[str]:
        return self.package.name if self.package else None

    @property
    def kind(self) -> Optional[PackageKind]:
        return self.package.kind if self.package else None

    def dependency(self, name: str) -> Optional[DependencyRequirement]:
        """Return the requirement declared for ``name``, if any."""
        for dep in self.dependencies:
            if dep.name == name:
                return dep
        return None
