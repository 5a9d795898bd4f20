"""Exception hierarchy for protopack.

Categories map onto how callers are expected to react:

- ParseError: malformed manifest or lockfile input, surfaced immediately.
- ResolutionError: the requirement set cannot be satisfied; fatal to a pass.
- IntegrityError: possible tampering or corruption; never a warning.
- RegistryError: transport and registry-side failures.
- AuthError: missing or rejected credentials; never retried.
- InstallError: an install pass failed and nothing was committed.
"""
from __future__ import annotations

from typing import Optional, Sequence


class ProtopackError(Exception):
    """Base class for all protopack errors."""


class ParseError(ProtopackError):
    """Structurally invalid manifest or lockfile input."""


class MalformedManifest(ParseError):
    """The manifest cannot be parsed or fails validation."""


class UnknownField(ParseError):
    """An unknown key was found while parsing in strict mode."""

    def __init__(self, field: str, section: str = ""):
        self.field = field
        self.section = section
        where = f" in [{section}]" if section else ""
        super().__init__(f"Unknown field '{field}'{where}")


class KindViolation(ParseError):
    """A library package declares or resolves to an api dependency."""


class MalformedLockfile(ParseError):
    """The lockfile cannot be parsed."""


class UnsupportedLockfileVersion(ParseError):
    """The lockfile was written by a newer format version."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Lockfile format version {found} is newer than supported version {supported}"
        )


class ResolutionError(ProtopackError):
    """The dependency graph cannot be resolved."""


def _format_chain(chain: Sequence[str]) -> str:
    return " -> ".join(chain) if chain else "<root>"


class VersionConflict(ResolutionError):
    """Two requirements on the same package name cannot both be satisfied."""

    def __init__(self, name: str, requirement_a, requirement_b, reason: Optional[str] = None):
        self.name = name
        self.requirement_a = requirement_a
        self.requirement_b = requirement_b
        message = (
            f"Version conflict on '{name}': {requirement_a} (from {_format_chain(requirement_a.chain)})"
            f" vs {requirement_b} (from {_format_chain(requirement_b.chain)})"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class CyclicDependency(ResolutionError):
    """The dependency graph contains a cycle."""

    def __init__(self, path: Sequence[str]):
        self.path = tuple(path)
        super().__init__(f"Cyclic dependency: {' -> '.join(self.path)}")


class UnresolvableRequirement(ResolutionError):
    """No published version satisfies a requirement."""

    def __init__(self, requirement, available: Sequence[str] = ()):
        self.requirement = requirement
        self.available = tuple(available)
        shown = ", ".join(self.available) if self.available else "none"
        super().__init__(
            f"No published version of '{requirement.name}' satisfies '{requirement.constraint}'"
            f" (required by {_format_chain(requirement.chain)}; available: {shown})"
        )


class IntegrityError(ProtopackError):
    """Downloaded or installed content cannot be trusted."""


class DigestMismatch(IntegrityError):
    """Recomputed digest differs from the recorded one."""

    def __init__(self, name: str, version: str, expected: str, actual: str):
        self.name = name
        self.version = version
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Digest mismatch for {name}@{version}: expected {expected}, got {actual}"
        )


class IdentityMismatch(IntegrityError):
    """Archive contents do not match the identity they were fetched under."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Archive identity mismatch: expected {expected}, found {actual}")


class PathTraversal(IntegrityError):
    """An archive entry would escape the target directory."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Archive entry escapes target directory: {path!r}")


class CorruptArchive(IntegrityError):
    """The archive cannot be decoded."""


class RegistryError(ProtopackError):
    """The registry returned an error or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class NotFound(RegistryError):
    """The requested package or version does not exist."""


class Conflict(RegistryError):
    """The version being published already exists."""


class RegistryUnavailable(RegistryError):
    """Transport failures persisted after the retry budget was spent."""


class AuthError(ProtopackError):
    """Authentication problems."""


class Unauthenticated(AuthError):
    """No credential is stored for the registry host."""

    def __init__(self, host: str):
        self.host = host
        super().__init__(f"No credential stored for {host}, please run `protopack login`")


class Unauthorized(AuthError):
    """The registry rejected the credential."""


class InstallError(ProtopackError):
    """An install pass failed; the vendor tree was left unchanged."""
