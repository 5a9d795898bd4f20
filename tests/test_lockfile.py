"""Tests for the Proto.lock model."""

import asyncio
import os

import pytest

from common.errors import MalformedLockfile, UnsupportedLockfileVersion
from constants import PackageKind
from lockfile import LockedPackage, Lockfile, LockStatus
from resolver import DependencyGraph, ResolvedNode, Resolver

from conftest import make_manifest

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64


def _graph():
    return DependencyGraph(
        [
            ResolvedNode("units", "1.2.0", PackageKind.LIBRARY, DIGEST_A, "core",
                         dependencies=("si",)),
            ResolvedNode("si", "2.0.1", PackageKind.LIBRARY, DIGEST_B, "core",
                         dependents=("units",)),
        ],
        roots=["units"],
    )


class TestSerialization:
    """Line-oriented TOML output."""

    def test_dumps_layout(self):
        """Packages are sorted by name and every field is written."""
        text = Lockfile.from_graph(_graph()).dumps()

        assert text.startswith("version = 1\n")
        assert text.index('name = "si"') < text.index('name = "units"')
        assert f'digest = "{DIGEST_A}"' in text
        assert 'dependencies = ["si"]' in text
        assert 'kind = "lib"' in text
        assert 'repository = "core"' in text

    def test_round_trip_is_byte_identical(self):
        """Loading and dumping an unchanged lockfile reproduces the same text."""
        text = Lockfile.from_graph(_graph()).dumps()

        assert Lockfile.loads(text).dumps() == text

    def test_empty_graph(self):
        """A project without dependencies still gets a versioned lockfile."""
        lockfile = Lockfile.from_graph(DependencyGraph([]))

        assert Lockfile.loads(lockfile.dumps()) == lockfile
        assert lockfile.packages == []

    def test_write_and_load(self, tmp_path):
        """write() replaces the file atomically and load() reads it back."""
        path = tmp_path / "Proto.lock"
        path.write_text("stale content", encoding="utf-8")
        lockfile = Lockfile.from_graph(_graph())

        lockfile.write(str(path))

        assert Lockfile.load(str(path)) == lockfile
        assert sorted(os.listdir(tmp_path)) == ["Proto.lock"]

    def test_load_missing_returns_none(self, tmp_path):
        assert Lockfile.load(str(tmp_path / "Proto.lock")) is None

    def test_to_graph_restores_nodes(self):
        """to_graph rebuilds dependents and takes roots from the manifest."""
        lockfile = Lockfile.from_graph(_graph())

        graph = lockfile.to_graph(make_manifest(deps=[("units", "^1.0")]))

        assert graph == _graph()


class TestLoading:
    """Validation of persisted lockfiles."""

    def test_future_version_rejected(self):
        """An unknown future format version is a hard error."""
        with pytest.raises(UnsupportedLockfileVersion):
            Lockfile.loads("version = 2\n")

    @pytest.mark.parametrize(
        "text",
        [
            "this is not toml",
            "",
            'version = "1"\n',
            'version = 1\npackage = "oops"\n',
            'version = 1\n[[package]]\nname = "units"\n',
            'version = 1\n[[package]]\nname = "units"\nversion = "1.x"\nkind = "lib"\n'
            'repository = "core"\ndigest = "sha256:00"\n',
            'version = 1\n[[package]]\nname = "units"\nversion = "1.0.0"\nkind = "service"\n'
            'repository = "core"\ndigest = "sha256:00"\n',
            'version = 1\n[[package]]\nname = "units"\nversion = "1.0.0"\nkind = "lib"\n'
            'repository = "core"\ndigest = "md5:00"\n',
            'version = 1\n[[package]]\nname = "../../etc"\nversion = "1.0.0"\nkind = "lib"\n'
            'repository = "core"\ndigest = "sha256:00"\n',
            'version = 1\n[[package]]\nname = "units"\nversion = "1.0.0"\nkind = "lib"\n'
            'repository = "Core Repo"\ndigest = "sha256:00"\n',
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(MalformedLockfile):
            Lockfile.loads(text)

    def test_duplicate_package_rejected(self):
        pkg = LockedPackage("units", "1.0.0", PackageKind.LIBRARY, "core", DIGEST_A)
        with pytest.raises(MalformedLockfile):
            Lockfile([pkg, pkg])


class TestVerify:
    """Staleness against the manifest's direct requirements."""

    def test_matching_manifest(self):
        lockfile = Lockfile.from_graph(_graph())
        assert lockfile.verify(make_manifest(deps=[("units", "^1.0")])) is LockStatus.MATCH

    def test_unsatisfied_constraint_is_stale(self):
        lockfile = Lockfile.from_graph(_graph())
        assert lockfile.verify(make_manifest(deps=[("units", "^2.0")])) is LockStatus.STALE

    def test_new_requirement_is_stale(self):
        lockfile = Lockfile.from_graph(_graph())
        manifest = make_manifest(deps=[("units", "^1.0"), ("geo", "^1.0")])
        assert lockfile.verify(manifest) is LockStatus.STALE

    def test_other_repository_is_stale(self):
        lockfile = Lockfile.from_graph(_graph())
        manifest = make_manifest(deps=[("units", "^1.0", "core-next")])
        assert lockfile.verify(manifest) is LockStatus.STALE

    def test_removed_requirement_is_stale(self):
        """Packages no longer reachable from the manifest make the lockfile stale."""
        lockfile = Lockfile.from_graph(_graph())
        assert lockfile.verify(make_manifest(deps=[("si", "^2.0")])) is LockStatus.STALE

    def test_matches_graph(self, registry):
        """matches() compares against a fresh resolution."""
        registry.add("units", "1.2.0", deps=[("si", "^2")])
        registry.add("si", "2.0.1")
        manifest = make_manifest(deps=[("units", "^1.0")])
        graph = asyncio.run(Resolver(registry).resolve(manifest)).graph
        lockfile = Lockfile.from_graph(graph)

        assert lockfile.matches(graph)
        registry.add("si", "2.1.0")
        assert not lockfile.matches(asyncio.run(Resolver(registry).resolve(manifest)).graph)
