"""Semantic version parsing and constraint matching."""

from .constraints import (
    VersionConstraint,
    is_valid_version,
    parse_version,
    select_highest,
    sort_versions,
)

__all__ = [
    "VersionConstraint",
    "is_valid_version",
    "parse_version",
    "select_highest",
    "sort_versions",
]
