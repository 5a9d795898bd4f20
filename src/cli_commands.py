"""CLI command implementations.

Each ``cmd_*`` function takes the parsed arguments plus the loaded config and
credential store and returns an exit code. Errors from the core propagate to
``run_command``, which logs one line and maps the error category onto an
``ExitCodes`` value.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
from typing import Callable, Dict, Optional, Tuple

from archive import pack
from common.credentials import CredentialStore, host_key
from common.errors import (
    AuthError,
    IntegrityError,
    MalformedManifest,
    ParseError,
    ProtopackError,
    RegistryError,
    RegistryUnavailable,
    ResolutionError,
)
from config import Config
from constants import Constants, ExitCodes, PackageKind
from install import Installer, collect_files
from lockfile import Lockfile, LockStatus
from manifest import (
    DependencyRequirement,
    Manifest,
    PackageInfo,
    manifest_to_dict,
    read_manifest,
    serialize,
    validate,
    write_manifest,
)
from manifest.parser import validate_name, validate_repository
from registry import RegistryClient
from resolver import Resolution, Resolver
from versioning import VersionConstraint, is_valid_version

logger = logging.getLogger(__name__)

_LOCATOR_RE = re.compile(r"^(?P<repository>[^/@\s]+)/(?P<name>[^/@\s]+)@(?P<constraint>.+)$")

INITIAL_VERSION = "0.1.0"


def parse_locator(text: str) -> Tuple[str, str, str]:
    """Split ``<repository>/<name>@<constraint>`` into its three parts.

    Raises:
        MalformedManifest: the text does not have that shape or names are invalid.
    """
    match = _LOCATOR_RE.match(text.strip())
    if not match:
        raise MalformedManifest(f"Expected <repository>/<name>@<version>, got {text!r}")
    repository = validate_repository(match.group("repository"), text)
    name = validate_name(match.group("name"), text)
    return repository, name, match.group("constraint").strip()


class Project:
    """Paths of one project directory."""

    def __init__(self, root: str = "."):
        self.root = root

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.root, Constants.MANIFEST_FILE)

    @property
    def lockfile_path(self) -> str:
        return os.path.join(self.root, Constants.LOCKFILE_FILE)

    def read_manifest(self) -> Manifest:
        return read_manifest(self.manifest_path)


def _client(config: Config, credentials: CredentialStore) -> RegistryClient:
    return RegistryClient(config, credentials)


async def _resolve(config: Config, credentials: CredentialStore, manifest: Manifest) -> Resolution:
    async with _client(config, credentials) as client:
        return await Resolver(client).resolve(manifest)


def cmd_init(args, config: Config, credentials: CredentialStore) -> int:
    """Create Proto.toml (and the proto/ directory) in the project directory."""
    project = Project(args.PROJECT_DIR)
    if os.path.exists(project.manifest_path):
        logger.error("%s already exists in %s", Constants.MANIFEST_FILE, os.path.abspath(project.root))
        return ExitCodes.FILE_ERROR.value

    package = None
    if args.API_NAME or args.LIB_NAME:
        kind = PackageKind.API if args.API_NAME else PackageKind.LIBRARY
        name = validate_name(args.API_NAME or args.LIB_NAME, "init")
        package = PackageInfo(name=name, kind=kind, version=INITIAL_VERSION)

    os.makedirs(os.path.join(project.root, Constants.PROTO_DIR), exist_ok=True)
    write_manifest(Manifest(package=package), project.manifest_path)
    if package is not None:
        logger.info("Initialized %s package '%s'", package.kind.value, package.name)
    else:
        logger.info("Initialized project without a package section")
    return ExitCodes.SUCCESS.value


def cmd_add(args, config: Config, credentials: CredentialStore) -> int:
    """Add or replace a dependency in Proto.toml."""
    project = Project(args.PROJECT_DIR)
    manifest = project.read_manifest()
    repository, name, raw = parse_locator(args.DEPENDENCY)
    try:
        constraint = VersionConstraint(raw)
    except ValueError as e:
        raise MalformedManifest(f"{args.DEPENDENCY}: {e}") from e

    requirement = DependencyRequirement(
        name=name, constraint=constraint, repository=repository, kind=PackageKind(args.KIND)
    )
    replaced = manifest.dependency(name) is not None
    manifest.dependencies = [
        requirement if dep.name == name else dep for dep in manifest.dependencies
    ]
    if not replaced:
        manifest.dependencies.append(requirement)
    write_manifest(validate(manifest), project.manifest_path)
    logger.info("%s %s", "Updated" if replaced else "Added", requirement)
    return ExitCodes.SUCCESS.value


def cmd_remove(args, config: Config, credentials: CredentialStore) -> int:
    """Remove a dependency from Proto.toml."""
    project = Project(args.PROJECT_DIR)
    manifest = project.read_manifest()
    if manifest.dependency(args.NAME) is None:
        logger.error("'%s' is not a dependency of this project", args.NAME)
        return ExitCodes.FILE_ERROR.value
    manifest.dependencies = [dep for dep in manifest.dependencies if dep.name != args.NAME]
    write_manifest(manifest, project.manifest_path)
    logger.info("Removed %s", args.NAME)
    return ExitCodes.SUCCESS.value


def cmd_lock(args, config: Config, credentials: CredentialStore) -> int:
    """Resolve from scratch and write Proto.lock."""
    project = Project(args.PROJECT_DIR)
    manifest = project.read_manifest()
    resolution = asyncio.run(_resolve(config, credentials, manifest))
    lockfile = Lockfile.from_graph(resolution.graph)
    lockfile.write(project.lockfile_path)
    logger.info("Locked %d package(s) in %s", len(lockfile.packages), Constants.LOCKFILE_FILE)
    return ExitCodes.SUCCESS.value


async def _lock_and_install(
    config: Config, credentials: CredentialStore, project: Project
) -> int:
    manifest = project.read_manifest()
    lockfile = Lockfile.load(project.lockfile_path)
    archives = None
    async with _client(config, credentials) as client:
        if lockfile is None or lockfile.verify(manifest) is LockStatus.STALE:
            logger.info(
                "%s %s, resolving",
                Constants.LOCKFILE_FILE,
                "is missing" if lockfile is None else "is out of date",
            )
            resolution = await Resolver(client).resolve(manifest)
            lockfile = Lockfile.from_graph(resolution.graph)
            archives = resolution.archives
        installed = await Installer(config, client, project.root).install(lockfile, archives)
    # A fresh lockfile is only committed once the install succeeded
    if archives is not None:
        lockfile.write(project.lockfile_path)
    logger.info("Installed %d package(s) into %s", len(installed), config.vendor_dir)
    return ExitCodes.SUCCESS.value


def cmd_install(args, config: Config, credentials: CredentialStore) -> int:
    """Install the locked graph, re-resolving only when the lockfile is missing or stale."""
    return asyncio.run(_lock_and_install(config, credentials, Project(args.PROJECT_DIR)))


def cmd_uninstall(args, config: Config, credentials: CredentialStore) -> int:
    """Remove the vendor tree."""
    removed = Installer(config, None, args.PROJECT_DIR).uninstall()
    if not removed:
        logger.info("Nothing to uninstall")
    return ExitCodes.SUCCESS.value


def _build_archive(project: Project, config: Config):
    manifest = project.read_manifest()
    if manifest.package is None:
        raise MalformedManifest(
            f"{Constants.MANIFEST_FILE} has no [package] section; nothing to package"
        )
    files = collect_files(project.root, config.vendor_dir)
    if not files:
        logger.warning("No %s files found under %s", Constants.SCHEMA_SUFFIX, Constants.PROTO_DIR)
    return pack(manifest, files)


def cmd_package(args, config: Config, credentials: CredentialStore) -> int:
    """Write ``<name>-<version>.tgz`` for the local package."""
    project = Project(args.PROJECT_DIR)
    archive = _build_archive(project, config)
    output_dir = args.OUTPUT_DIR or project.root
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, archive.filename)
    with open(path, "wb") as fh:
        fh.write(archive.data)
    logger.info("Packaged %s (%s)", path, archive.digest)
    return ExitCodes.SUCCESS.value


async def _publish(config: Config, credentials: CredentialStore, archive, repository: str) -> None:
    async with _client(config, credentials) as client:
        await client.publish(archive, repository)


def cmd_publish(args, config: Config, credentials: CredentialStore) -> int:
    """Package and upload the local package."""
    validate_repository(args.REPOSITORY, "--repository")
    project = Project(args.PROJECT_DIR)
    archive = _build_archive(project, config)
    if args.DRY_RUN:
        logger.info(
            "Dry run: would publish %s/%s (%s)",
            args.REPOSITORY, archive.package_version, archive.digest,
        )
        return ExitCodes.SUCCESS.value
    asyncio.run(_publish(config, credentials, archive, args.REPOSITORY))
    return ExitCodes.SUCCESS.value


async def _show(config: Config, credentials: CredentialStore, repository: str, name: str, version: str):
    async with _client(config, credentials) as client:
        return await client.fetch_manifest(repository, name, version)


def cmd_show(args, config: Config, credentials: CredentialStore) -> int:
    """Print the manifest embedded in a published archive."""
    repository, name, version = parse_locator(args.PACKAGE)
    if not is_valid_version(version):
        raise MalformedManifest(f"{args.PACKAGE}: '{version}' is not an exact version")
    manifest = asyncio.run(_show(config, credentials, repository, name, version))
    if args.JSON:
        sys.stdout.write(json.dumps(manifest_to_dict(manifest), indent=2) + "\n")
    else:
        sys.stdout.write(serialize(manifest).decode("utf-8"))
    return ExitCodes.SUCCESS.value


def cmd_login(args, config: Config, credentials: CredentialStore) -> int:
    """Store a token read from stdin for the registry host."""
    host = host_key(args.LOGIN_REGISTRY)
    if not host:
        logger.error("Invalid registry URL: %s", args.LOGIN_REGISTRY)
        return ExitCodes.FILE_ERROR.value
    if sys.stdin.isatty():
        sys.stderr.write(f"Token for {host}: ")
        sys.stderr.flush()
    token = sys.stdin.readline().strip()
    if not token:
        logger.error("No token given")
        return ExitCodes.AUTH_ERROR.value
    credentials.set(host, token)
    logger.info("Stored credentials for %s", host)
    return ExitCodes.SUCCESS.value


def cmd_logout(args, config: Config, credentials: CredentialStore) -> int:
    """Forget the token stored for the registry host."""
    host = host_key(args.LOGIN_REGISTRY)
    credentials.delete(host)
    logger.info("Removed credentials for %s", host)
    return ExitCodes.SUCCESS.value


COMMANDS: Dict[str, Callable[..., int]] = {
    "init": cmd_init,
    "add": cmd_add,
    "remove": cmd_remove,
    "lock": cmd_lock,
    "install": cmd_install,
    "uninstall": cmd_uninstall,
    "package": cmd_package,
    "publish": cmd_publish,
    "show": cmd_show,
    "login": cmd_login,
    "logout": cmd_logout,
}


def exit_code_for(exc: BaseException) -> ExitCodes:
    """Map an error category onto the process exit code."""
    if isinstance(exc, ParseError):
        return ExitCodes.PARSE_ERROR
    if isinstance(exc, ResolutionError):
        return ExitCodes.RESOLUTION_ERROR
    if isinstance(exc, IntegrityError):
        return ExitCodes.INTEGRITY_ERROR
    if isinstance(exc, AuthError):
        return ExitCodes.AUTH_ERROR
    if isinstance(exc, RegistryUnavailable):
        return ExitCodes.CONNECTION_ERROR
    if isinstance(exc, RegistryError):
        return ExitCodes.REGISTRY_ERROR
    return ExitCodes.FILE_ERROR


def run_command(args, config: Config, credentials: CredentialStore) -> int:
    """Dispatch to the selected command and translate errors into exit codes."""
    handler: Optional[Callable[..., int]] = COMMANDS.get(args.COMMAND)
    if handler is None:
        logger.error("Unknown command: %s", args.COMMAND)
        return ExitCodes.FILE_ERROR.value
    try:
        return handler(args, config, credentials)
    except (ProtopackError, OSError) as exc:
        code = exit_code_for(exc)
        logger.error("%s: %s", type(exc).__name__, exc)
        logger.debug("Command %s failed", args.COMMAND, exc_info=True)
        return code.value
