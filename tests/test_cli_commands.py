"""Tests for argument parsing and the CLI commands."""

import io
import os

import pytest

import cli_commands
import protopack
from archive import unpack
from args import parse_args
from cli_commands import exit_code_for, parse_locator, run_command
from common.credentials import MemoryCredentialStore
from common.errors import (
    Conflict,
    CyclicDependency,
    DigestMismatch,
    InstallError,
    MalformedManifest,
    RegistryError,
    RegistryUnavailable,
    Unauthenticated,
)
from config import Config
from constants import ExitCodes
from lockfile import Lockfile
from manifest import read_manifest


class _FakeClient:
    def __init__(self, registry):
        self._registry = registry

    async def __aenter__(self):
        return self._registry

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


@pytest.fixture
def cli(tmp_path, registry, monkeypatch):
    """Run a command line against a project in tmp_path and the fake registry."""
    monkeypatch.setattr(cli_commands, "_client", lambda config, credentials: _FakeClient(registry))
    credentials = MemoryCredentialStore()

    def _run(*argv):
        args = parse_args(["-C", str(tmp_path), *argv])
        return run_command(args, Config(registry_url="https://registry.example.com"), credentials)

    _run.credentials = credentials
    return _run


class TestArgs:
    def test_global_and_command_options(self):
        args = parse_args(["--loglevel", "debug", "--registry", "https://r.example", "add",
                           "core/units@^1.2", "--kind", "api"])

        assert args.COMMAND == "add"
        assert args.LOG_LEVEL == "DEBUG"
        assert args.REGISTRY == "https://r.example"
        assert args.DEPENDENCY == "core/units@^1.2"
        assert args.KIND == "api"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])

    def test_init_kinds_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["init", "--api", "a1", "--lib", "b1"])

    def test_publish_requires_repository(self):
        with pytest.raises(SystemExit):
            parse_args(["publish"])

    def test_parse_locator(self):
        assert parse_locator("core-stable/units@>=1.0.0 <2.0.0") == (
            "core-stable", "units", ">=1.0.0 <2.0.0"
        )
        with pytest.raises(MalformedManifest):
            parse_locator("units@1.0.0")
        with pytest.raises(MalformedManifest):
            parse_locator("Core/units@1.0.0")


class TestManifestCommands:
    def test_init(self, cli, tmp_path):
        assert cli("init", "--api", "physics") == ExitCodes.SUCCESS.value

        manifest = read_manifest(str(tmp_path / "Proto.toml"))
        assert manifest.name == "physics"
        assert manifest.package.version == "0.1.0"
        assert (tmp_path / "proto").is_dir()
        assert cli("init") == ExitCodes.FILE_ERROR.value

    def test_init_invalid_name(self, cli):
        assert cli("init", "--lib", "Bad Name") == ExitCodes.PARSE_ERROR.value

    def test_add_and_remove(self, cli, tmp_path):
        cli("init", "--api", "physics")

        assert cli("add", "core/units@^1.2") == ExitCodes.SUCCESS.value
        assert cli("add", "core/units@^1.4") == ExitCodes.SUCCESS.value
        manifest = read_manifest(str(tmp_path / "Proto.toml"))
        assert [str(d) for d in manifest.dependencies] == ["core/units@^1.4"]

        assert cli("remove", "units") == ExitCodes.SUCCESS.value
        assert read_manifest(str(tmp_path / "Proto.toml")).dependencies == []
        assert cli("remove", "units") == ExitCodes.FILE_ERROR.value

    def test_add_rejects_bad_input(self, cli):
        cli("init", "--lib", "units")

        assert cli("add", "core/si@not-a-range") == ExitCodes.PARSE_ERROR.value
        assert cli("add", "core/svc@^1", "--kind", "api") == ExitCodes.PARSE_ERROR.value

    def test_missing_manifest(self, cli):
        assert cli("add", "core/units@^1") == ExitCodes.PARSE_ERROR.value


class TestLockAndInstall:
    def test_lock(self, cli, registry, tmp_path):
        registry.add("units", "1.2.0")
        cli("init")
        cli("add", "core/units@^1")

        assert cli("lock") == ExitCodes.SUCCESS.value

        lockfile = Lockfile.load(str(tmp_path / "Proto.lock"))
        assert [(p.name, p.version) for p in lockfile.packages] == [("units", "1.2.0")]

    def test_install_resolves_once(self, cli, registry, tmp_path):
        registry.add("units", "1.2.0", deps=[("si", "^2")])
        registry.add("si", "2.0.0")
        cli("init")
        cli("add", "core/units@^1")

        assert cli("install") == ExitCodes.SUCCESS.value
        assert (tmp_path / "Proto.lock").exists()
        assert (tmp_path / "proto" / "vendor" / "si" / "si.proto").exists()
        calls = len(registry.calls)

        assert cli("install") == ExitCodes.SUCCESS.value
        assert len(registry.calls) == calls

    def test_stale_lockfile_is_regenerated(self, cli, registry, tmp_path):
        registry.add("units", "1.2.0")
        registry.add("units", "2.0.0")
        cli("init")
        cli("add", "core/units@^1")
        cli("install")

        cli("add", "core/units@^2")
        assert cli("install") == ExitCodes.SUCCESS.value

        lockfile = Lockfile.load(str(tmp_path / "Proto.lock"))
        assert lockfile.packages[0].version == "2.0.0"

    def test_failed_resolution_keeps_lockfile(self, cli, registry, tmp_path):
        registry.add("units", "1.2.0")
        cli("init")
        cli("add", "core/units@^1")
        cli("install")
        before = (tmp_path / "Proto.lock").read_bytes()

        cli("add", "core/units@^7")
        assert cli("install") == ExitCodes.RESOLUTION_ERROR.value
        assert (tmp_path / "Proto.lock").read_bytes() == before

    def test_uninstall(self, cli, registry, tmp_path):
        registry.add("units", "1.2.0")
        cli("init")
        cli("add", "core/units@^1")
        cli("install")

        assert cli("uninstall") == ExitCodes.SUCCESS.value
        assert not (tmp_path / "proto" / "vendor").exists()


class TestPackageAndPublish:
    def _project(self, cli, tmp_path):
        cli("init", "--lib", "units")
        (tmp_path / "proto" / "length.proto").write_bytes(b'syntax = "proto3";\n')

    def test_package(self, cli, tmp_path):
        self._project(cli, tmp_path)
        out = tmp_path / "dist"

        assert cli("package", "--output-dir", str(out)) == ExitCodes.SUCCESS.value

        archive = unpack((out / "units-0.1.0.tgz").read_bytes(), "units", "0.1.0")
        assert [f.path for f in archive.files] == ["length.proto"]

    def test_package_skips_configured_vendor_dir(self, cli, registry, tmp_path):
        """Installed dependencies never end up in the local package's archive."""
        self._project(cli, tmp_path)
        registry.add("si", "2.0.0")
        cli("add", "core/si@^2")
        config = Config(registry_url="https://registry.example.com", vendor_dir="proto/deps")

        def run(*argv):
            return run_command(parse_args(["-C", str(tmp_path), *argv]), config, cli.credentials)

        assert run("install") == ExitCodes.SUCCESS.value
        assert (tmp_path / "proto" / "deps" / "si" / "si.proto").exists()
        assert run("package", "--output-dir", str(tmp_path / "dist")) == ExitCodes.SUCCESS.value

        archive = unpack((tmp_path / "dist" / "units-0.1.0.tgz").read_bytes())
        assert [f.path for f in archive.files] == ["length.proto"]

    def test_package_without_package_section(self, cli):
        cli("init")
        assert cli("package") == ExitCodes.PARSE_ERROR.value

    def test_publish(self, cli, registry, tmp_path):
        self._project(cli, tmp_path)

        assert cli("publish", "--repository", "core") == ExitCodes.SUCCESS.value
        assert [(repo, a.name, a.version) for repo, a in registry.published] == [("core", "units", "0.1.0")]

        assert cli("publish", "--repository", "core") == ExitCodes.REGISTRY_ERROR.value

    def test_publish_dry_run(self, cli, registry, tmp_path):
        self._project(cli, tmp_path)

        assert cli("publish", "--repository", "core", "--dry-run") == ExitCodes.SUCCESS.value
        assert registry.published == []


class TestShowAndLogin:
    def test_show(self, cli, registry, capsys):
        registry.add("units", "1.2.0", deps=[("si", "^2")])

        assert cli("show", "core/units@1.2.0") == ExitCodes.SUCCESS.value

        out = capsys.readouterr().out
        assert 'name = "units"' in out
        assert "si = " in out

    def test_show_json(self, cli, registry, capsys):
        registry.add("units", "1.2.0")

        assert cli("show", "core/units@1.2.0", "--json") == ExitCodes.SUCCESS.value

        assert '"name": "units"' in capsys.readouterr().out

    def test_show_requires_exact_version(self, cli):
        assert cli("show", "core/units@^1") == ExitCodes.PARSE_ERROR.value

    def test_login_logout(self, cli, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("tok-123\n"))

        assert cli("login", "--registry", "https://registry.example.com") == ExitCodes.SUCCESS.value
        assert cli.credentials.get("registry.example.com") == "tok-123"

        assert cli("logout", "--registry", "https://registry.example.com") == ExitCodes.SUCCESS.value
        assert cli.credentials.get("registry.example.com") is None

    def test_login_empty_token(self, cli, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("\n"))

        assert cli("login", "--registry", "https://registry.example.com") == ExitCodes.AUTH_ERROR.value


class TestExitCodes:
    @pytest.mark.parametrize(
        "exc,code",
        [
            (MalformedManifest("x"), ExitCodes.PARSE_ERROR),
            (CyclicDependency(["a1", "b1", "a1"]), ExitCodes.RESOLUTION_ERROR),
            (DigestMismatch("a1", "1.0.0", "sha256:0", "sha256:1"), ExitCodes.INTEGRITY_ERROR),
            (Unauthenticated("registry.example.com"), ExitCodes.AUTH_ERROR),
            (RegistryUnavailable("down"), ExitCodes.CONNECTION_ERROR),
            (Conflict("exists", status=409), ExitCodes.REGISTRY_ERROR),
            (RegistryError("teapot", status=418), ExitCodes.REGISTRY_ERROR),
            (InstallError("locked"), ExitCodes.FILE_ERROR),
            (OSError("disk full"), ExitCodes.FILE_ERROR),
        ],
    )
    def test_mapping(self, exc, code):
        assert exit_code_for(exc) is code


class TestMain:
    def test_main_exits_with_command_status(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PROTOPACK_CONFIG", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))

        with pytest.raises(SystemExit) as exc_info:
            protopack.main(["-C", str(tmp_path), "init", "--lib", "units"])

        assert exc_info.value.code == ExitCodes.SUCCESS.value
        assert os.path.exists(tmp_path / "Proto.toml")

    def test_main_bad_config(self, tmp_path, monkeypatch):
        with pytest.raises(SystemExit) as exc_info:
            protopack.main(["--config", str(tmp_path / "missing.yml"), "-C", str(tmp_path), "init"])

        assert exc_info.value.code == ExitCodes.FILE_ERROR.value

    def test_main_config_value_of_wrong_type(self, tmp_path):
        config_path = tmp_path / "config.yml"
        config_path.write_text("max_concurrency: many\n", encoding="utf-8")

        with pytest.raises(SystemExit) as exc_info:
            protopack.main(["--config", str(config_path), "-C", str(tmp_path), "uninstall"])

        assert exc_info.value.code == ExitCodes.FILE_ERROR.value
