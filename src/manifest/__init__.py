"""Manifest model: package identity, kind and dependency requirements."""

from .models import (
    DependencyRequirement,
    Manifest,
    PackageIdentity,
    PackageInfo,
    PackageVersion,
)
from .parser import (
    manifest_to_dict,
    parse,
    read_manifest,
    serialize,
    validate,
    write_manifest,
)

__all__ = [
    "DependencyRequirement",
    "Manifest",
    "PackageIdentity",
    "PackageInfo",
    "PackageVersion",
    "manifest_to_dict",
    "parse",
    "read_manifest",
    "serialize",
    "validate",
    "write_manifest",
]
