"""Tests for the vendor tree installer."""

import asyncio
import os

import pytest

from archive import pack
from common.errors import DigestMismatch, InstallError
from config import Config
from install import Installer, collect_files
from lockfile import Lockfile
from resolver import Resolver

from conftest import make_manifest


def _snapshot(root):
    out = {}
    for dirpath, _, filenames in os.walk(root):
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            with open(full, "rb") as fh:
                out[os.path.relpath(full, root)] = fh.read()
    return out


@pytest.fixture
def project(tmp_path):
    (tmp_path / "proto").mkdir()
    return tmp_path


def _locked(registry, *deps):
    resolution = asyncio.run(Resolver(registry).resolve(make_manifest(deps=list(deps))))
    return Lockfile.from_graph(resolution.graph), resolution


def _install(registry, project, lockfile, archives=None):
    installer = Installer(Config(), registry, str(project))
    return asyncio.run(installer.install(lockfile, archives))


class TestInstall:
    """Materializing a lockfile."""

    def test_installs_files_and_manifest(self, registry, project):
        registry.add("units", "1.2.0", deps=[("si", "^2")])
        registry.add("si", "2.0.0", files=[("si/base.proto", b"// base\n")])
        lockfile, _ = _locked(registry, ("units", "^1"))

        paths = _install(registry, project, lockfile)

        vendor = project / "proto" / "vendor"
        assert paths == [str(vendor / "si"), str(vendor / "units")]
        assert (vendor / "si" / "si" / "base.proto").read_bytes() == b"// base\n"
        assert (vendor / "units" / "Proto.toml").exists()
        assert not os.path.exists(project / ".protopack.lock")
        assert [p for p in os.listdir(project / "proto") if p.startswith(".")] == []

    def test_second_install_fetches_nothing(self, registry, project):
        """Installing an already-installed lockfile is a no-op on the network and the tree."""
        registry.add("units", "1.2.0")
        lockfile, _ = _locked(registry, ("units", "^1"))
        _install(registry, project, lockfile)
        before = _snapshot(project)
        fetches = registry.count("fetch_archive")

        _install(registry, project, lockfile)

        assert registry.count("fetch_archive") == fetches
        assert _snapshot(project) == before

    def test_reuses_resolver_archives(self, registry, project):
        """Archives downloaded during resolution are not fetched again."""
        registry.add("units", "1.2.0")
        lockfile, resolution = _locked(registry, ("units", "^1"))
        fetches = registry.count("fetch_archive")

        _install(registry, project, lockfile, resolution.archives)

        assert registry.count("fetch_archive") == fetches

    def test_repairs_modified_package(self, registry, project):
        """A tampered local copy no longer matches its digest and is replaced."""
        registry.add("units", "1.2.0")
        lockfile, _ = _locked(registry, ("units", "^1"))
        _install(registry, project, lockfile)
        local = project / "proto" / "vendor" / "units" / "units.proto"
        original = local.read_bytes()
        local.write_bytes(b"edited")
        (local.parent / "extra.proto").write_bytes(b"stray")

        _install(registry, project, lockfile)

        assert local.read_bytes() == original
        assert not (local.parent / "extra.proto").exists()

    def test_prunes_packages_no_longer_locked(self, registry, project):
        registry.add("units", "1.2.0")
        registry.add("geo", "1.0.0")
        lockfile, _ = _locked(registry, ("units", "^1"), ("geo", "^1"))
        _install(registry, project, lockfile)
        smaller, _ = _locked(registry, ("units", "^1"))

        _install(registry, project, smaller)

        assert sorted(os.listdir(project / "proto" / "vendor")) == ["units"]

    def test_digest_mismatch_leaves_tree_untouched(self, registry, project):
        """A registry answer that differs from the lockfile aborts the whole pass."""
        registry.add("units", "1.2.0")
        registry.add("geo", "1.0.0")
        lockfile, _ = _locked(registry, ("units", "^1"))
        _install(registry, project, lockfile)
        before = _snapshot(project)

        bigger, _ = _locked(registry, ("units", "^1"), ("geo", "^1"))
        registry.archives[("core", "geo")]["1.0.0"] = pack(
            make_manifest("geo", "1.0.0"), [("geo.proto", b"compromised")]
        )

        with pytest.raises(DigestMismatch) as exc_info:
            _install(registry, project, bigger)

        assert exc_info.value.name == "geo"
        assert _snapshot(project) == before
        assert not os.path.exists(project / ".protopack.lock")

    def test_failed_swap_restores_previous_tree(self, registry, project, monkeypatch):
        """A move that fails halfway through the swap puts every package back."""
        registry.add("aaa", "1.0.0")
        registry.add("bbb", "1.0.0")
        old, _ = _locked(registry, ("aaa", "1.0.0"), ("bbb", "1.0.0"))
        _install(registry, project, old)
        before = _snapshot(project)
        registry.add("aaa", "1.1.0")
        registry.add("bbb", "1.1.0")
        new, _ = _locked(registry, ("aaa", "^1.1"), ("bbb", "^1.1"))

        real_replace = os.replace
        blocked = str(project / "proto" / "vendor" / "bbb")

        def failing_replace(src, dst):
            if str(dst) == blocked and str(src).endswith(os.path.join("new", "bbb")):
                raise OSError("No space left on device")
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", failing_replace)

        with pytest.raises(InstallError):
            _install(registry, project, new)

        assert _snapshot(project) == before
        assert [p for p in os.listdir(project / "proto") if p.startswith(".")] == []

    def test_failed_first_install_leaves_no_vendor_dir(self, registry, project, monkeypatch):
        registry.add("units", "1.2.0")
        lockfile, _ = _locked(registry, ("units", "^1"))

        def failing_replace(src, dst):
            raise OSError("Read-only file system")

        monkeypatch.setattr(os, "replace", failing_replace)

        with pytest.raises(InstallError):
            _install(registry, project, lockfile)

        assert os.listdir(project / "proto") == []

    def test_concurrent_install_is_refused(self, registry, project):
        registry.add("units", "1.2.0")
        lockfile, _ = _locked(registry, ("units", "^1"))
        (project / ".protopack.lock").write_text("1234")

        with pytest.raises(InstallError):
            _install(registry, project, lockfile)

        assert not (project / "proto" / "vendor").exists()

    def test_uninstall(self, registry, project):
        registry.add("units", "1.2.0")
        lockfile, _ = _locked(registry, ("units", "^1"))
        _install(registry, project, lockfile)
        installer = Installer(Config(), registry, str(project))

        assert installer.uninstall() is True
        assert not (project / "proto" / "vendor").exists()
        assert installer.uninstall() is False


class TestCollectFiles:
    """Local schema file collection."""

    def test_collects_sorted_proto_files_outside_vendor(self, project):
        proto = project / "proto"
        (proto / "nested").mkdir()
        (proto / "nested" / "b.proto").write_bytes(b"b")
        (proto / "a.proto").write_bytes(b"a")
        (proto / "README.md").write_bytes(b"ignored")
        (proto / "vendor" / "dep").mkdir(parents=True)
        (proto / "vendor" / "dep" / "dep.proto").write_bytes(b"vendored")

        assert collect_files(str(project)) == [("a.proto", b"a"), ("nested/b.proto", b"b")]

    def test_no_proto_directory(self, tmp_path):
        assert collect_files(str(tmp_path)) == []
