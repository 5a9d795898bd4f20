"""Parse, validate and serialize Proto.toml manifests.

Reading goes through tomllib (tomli on older interpreters); writing goes
through tomlkit so the same Manifest always serializes to the same bytes.
"""
from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, List, Optional, Union

import tomlkit

try:
    import tomllib as toml  # type: ignore
except ImportError:  # Python < 3.11
    import tomli as toml  # type: ignore

from common.errors import KindViolation, MalformedManifest, UnknownField
from constants import Constants, PackageKind
from versioning import VersionConstraint, is_valid_version

from .models import DependencyRequirement, Manifest, PackageInfo

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(Constants.PACKAGE_NAME_PATTERN)
_REPOSITORY_RE = re.compile(Constants.REPOSITORY_PATTERN)

_TOP_LEVEL_KEYS = {"package", "dependencies"}
_PACKAGE_KEYS = {"name", "kind", "version", "description"}
_DEPENDENCY_KEYS = {"repository", "version", "kind"}


def _unknown(keys, allowed, section: str, strict: bool) -> None:
    extra = sorted(set(keys) - allowed)
    if not extra:
        return
    if strict:
        raise UnknownField(extra[0], section)
    logger.warning(
        "Ignoring unknown manifest field(s) %s%s",
        ", ".join(extra),
        f" in [{section}]" if section else "",
    )


def parse_kind(value: Any, where: str) -> PackageKind:
    """Map a kind string onto the closed PackageKind variant set."""
    for kind in PackageKind:
        if value == kind.value:
            return kind
    allowed = ", ".join(k.value for k in PackageKind)
    raise MalformedManifest(f"{where}: kind must be one of {allowed}, got {value!r}")


def validate_name(name: Any, where: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise MalformedManifest(
            f"{where}: invalid package name {name!r} (lowercase letters, digits and '-', "
            "starting with a letter, 2-128 characters)"
        )
    return name


def validate_repository(repository: Any, where: str) -> str:
    if not isinstance(repository, str) or not _REPOSITORY_RE.match(repository):
        raise MalformedManifest(
            f"{where}: invalid repository {repository!r} (lower-kebab-case expected)"
        )
    return repository


def _parse_package(data: Any, strict: bool) -> PackageInfo:
    if not isinstance(data, dict):
        raise MalformedManifest("[package] must be a table")
    _unknown(data.keys(), _PACKAGE_KEYS, "package", strict)
    name = validate_name(data.get("name"), "[package]")
    kind = parse_kind(data.get("kind"), "[package]")
    version = data.get("version")
    if not isinstance(version, str) or not is_valid_version(version):
        raise MalformedManifest(f"[package]: invalid version {version!r}")
    description = data.get("description")
    if description is not None and not isinstance(description, str):
        raise MalformedManifest("[package]: description must be a string")
    return PackageInfo(name=name, kind=kind, version=version, description=description)


def _parse_dependency(name: str, data: Any, strict: bool) -> DependencyRequirement:
    where = f"[dependencies.{name}]"
    validate_name(name, where)
    if not isinstance(data, dict):
        raise MalformedManifest(f"{where}: expected a table with repository and version")
    _unknown(data.keys(), _DEPENDENCY_KEYS, f"dependencies.{name}", strict)
    repository = validate_repository(data.get("repository"), where)
    raw_constraint = data.get("version")
    if not isinstance(raw_constraint, str):
        raise MalformedManifest(f"{where}: version constraint must be a string")
    try:
        constraint = VersionConstraint(raw_constraint)
    except ValueError as e:
        raise MalformedManifest(f"{where}: {e}") from e
    kind = parse_kind(data.get("kind", PackageKind.LIBRARY.value), where)
    return DependencyRequirement(name=name, constraint=constraint, repository=repository, kind=kind)


def validate(manifest: Manifest) -> Manifest:
    """Check the invariants a Manifest must hold regardless of where it came from.

    Raises:
        MalformedManifest: duplicate dependency names or invalid fields.
        KindViolation: a library declaring an api dependency.
    """
    seen = set()
    for dep in manifest.dependencies:
        if dep.name in seen:
            raise MalformedManifest(f"Duplicate dependency '{dep.name}'")
        seen.add(dep.name)
        validate_name(dep.name, f"[dependencies.{dep.name}]")
        validate_repository(dep.repository, f"[dependencies.{dep.name}]")
        if manifest.package is not None and dep.name == manifest.package.name:
            raise MalformedManifest(f"Package '{dep.name}' cannot depend on itself")

    if manifest.package is not None:
        validate_name(manifest.package.name, "[package]")
        if manifest.package.kind is PackageKind.LIBRARY:
            for dep in manifest.dependencies:
                if dep.kind is PackageKind.API:
                    raise KindViolation(
                        f"Library package '{manifest.package.name}' cannot depend on "
                        f"api package '{dep.name}'"
                    )
        elif manifest.package.kind is not PackageKind.API:
            raise MalformedManifest(f"Unsupported package kind {manifest.package.kind!r}")
    return manifest


def parse(data: Union[bytes, str], strict: bool = False) -> Manifest:
    """Parse manifest bytes into a validated Manifest.

    Args:
        data: Raw Proto.toml content.
        strict: Raise UnknownField instead of warning on unknown keys.

    Raises:
        MalformedManifest, UnknownField, KindViolation
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedManifest(f"Manifest is not valid UTF-8: {e}") from e
    else:
        text = data
    try:
        doc = toml.loads(text)
    except toml.TOMLDecodeError as e:
        raise MalformedManifest(f"Invalid TOML: {e}") from e

    _unknown(doc.keys(), _TOP_LEVEL_KEYS, "", strict)

    package = None
    if "package" in doc:
        package = _parse_package(doc["package"], strict)

    deps_table = doc.get("dependencies", {})
    if not isinstance(deps_table, dict):
        raise MalformedManifest("[dependencies] must be a table")
    dependencies: List[DependencyRequirement] = [
        _parse_dependency(name, value, strict) for name, value in deps_table.items()
    ]
    return validate(Manifest(package=package, dependencies=dependencies))


def serialize(manifest: Manifest) -> bytes:
    """Serialize a Manifest to canonical Proto.toml bytes."""
    validate(manifest)
    doc = tomlkit.document()
    if manifest.package is not None:
        pkg = tomlkit.table()
        pkg.add("name", manifest.package.name)
        pkg.add("kind", manifest.package.kind.value)
        pkg.add("version", manifest.package.version)
        if manifest.package.description is not None:
            pkg.add("description", manifest.package.description)
        doc.add("package", pkg)

    deps = tomlkit.table()
    for dep in manifest.dependencies:
        entry = tomlkit.inline_table()
        entry["repository"] = dep.repository
        entry["version"] = str(dep.constraint)
        if dep.kind is not PackageKind.LIBRARY:
            entry["kind"] = dep.kind.value
        deps.add(dep.name, entry)
    doc.add("dependencies", deps)
    return tomlkit.dumps(doc).encode("utf-8")


def read_manifest(path: Optional[str] = None, strict: bool = False) -> Manifest:
    """Read and parse the manifest file at ``path`` (default ./Proto.toml)."""
    path = path or Constants.MANIFEST_FILE
    try:
        with open(path, "rb") as fh:
            return parse(fh.read(), strict=strict)
    except FileNotFoundError as e:
        raise MalformedManifest(f"Manifest not found: {path}") from e


def write_manifest(manifest: Manifest, path: Optional[str] = None) -> None:
    """Write the manifest atomically to ``path`` (default ./Proto.toml)."""
    path = path or Constants.MANIFEST_FILE
    payload = serialize(manifest)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "wb") as fh:
        fh.write(payload)
    os.replace(tmp_path, path)


def manifest_to_dict(manifest: Manifest) -> Dict[str, Any]:
    """Plain-dict view of a manifest, used for JSON output."""
    out: Dict[str, Any] = {}
    if manifest.package is not None:
        out["package"] = {
            "name": manifest.package.name,
            "kind": manifest.package.kind.value,
            "version": manifest.package.version,
        }
        if manifest.package.description is not None:
            out["package"]["description"] = manifest.package.description
    out["dependencies"] = {
        dep.name: {
            "repository": dep.repository,
            "version": str(dep.constraint),
            "kind": dep.kind.value,
        }
        for dep in manifest.dependencies
    }
    return out
