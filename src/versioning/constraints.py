"""Semantic version constraints.

Constraints use npm/cargo range syntax (``^1.2``, ``~1.2.3``, ``1.2.3``,
``>=1.0.0 <2.0.0``, ``1.x``, ``*``) and are evaluated with
``semantic_version.NpmSpec``. Pre-releases only match when the constraint
names a pre-release of the same major.minor.patch.
"""

from functools import total_ordering
from typing import Iterable, List, Optional, Sequence

import semantic_version


def parse_version(text: str) -> semantic_version.Version:
    """Parse a strict ``major.minor.patch[-pre][+build]`` version string.

    Raises:
        ValueError: if the text is not a valid semantic version.
    """
    return semantic_version.Version(str(text).strip())


def is_valid_version(text: str) -> bool:
    """Return True when ``text`` is a strict semantic version."""
    try:
        parse_version(text)
    except ValueError:
        return False
    return True


@total_ordering
class VersionConstraint:
    """A parsed version requirement; keeps its source text for display and serialization."""

    __slots__ = ("raw", "_spec")

    def __init__(self, raw: str):
        text = str(raw).strip()
        if not text:
            raise ValueError("Empty version constraint")
        try:
            self._spec = semantic_version.NpmSpec(text)
        except ValueError as e:
            raise ValueError(f"Invalid version constraint '{text}': {e}") from e
        self.raw = text

    def matches(self, version) -> bool:
        """Return True if ``version`` (string or Version) satisfies this constraint."""
        if not isinstance(version, semantic_version.Version):
            try:
                version = parse_version(version)
            except ValueError:
                return False
        return self._spec.match(version)

    def __contains__(self, version) -> bool:
        return self.matches(version)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"VersionConstraint({self.raw!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, VersionConstraint):
            return NotImplemented
        return self.raw == other.raw

    def __lt__(self, other) -> bool:
        if not isinstance(other, VersionConstraint):
            return NotImplemented
        return self.raw < other.raw

    def __hash__(self) -> int:
        return hash(self.raw)


def sort_versions(candidates: Iterable[str]) -> List[semantic_version.Version]:
    """Parse and sort candidate versions ascending, skipping invalid strings."""
    parsed = []
    for v in candidates:
        try:
            parsed.append(parse_version(v))
        except ValueError:
            continue
    return sorted(set(parsed))


def select_highest(
    candidates: Iterable[str], constraints: Sequence[VersionConstraint]
) -> Optional[semantic_version.Version]:
    """Pick the highest candidate satisfying every constraint.

    The result depends only on the candidate set and the constraints, never on
    the order either is given in.
    """
    for version in reversed(sort_versions(candidates)):
        if all(c.matches(version) for c in constraints):
            return version
    return None
