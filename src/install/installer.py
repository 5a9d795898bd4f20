"""Materialize a lockfile into the vendor tree.

Layout: ``proto/vendor/<name>/`` holds each package's files plus its
embedded ``Proto.toml``. A package whose files on disk already hash to the
locked digest is skipped without touching the network. Everything fetched in
one pass is extracted into a staging directory next to the vendor tree and
only swapped into place once every package has been verified, so a failed or
cancelled pass leaves the previous tree as it was.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from archive import PackageArchive, digest_tree, extract
from common.aio import gather_all
from common.errors import DigestMismatch, InstallError, IntegrityError
from common.logging_utils import extra_context, is_debug_enabled
from config import Config
from constants import Constants
from lockfile import LockedPackage, Lockfile

logger = logging.getLogger(__name__)


class Installer:
    """Sole writer of the project's vendor tree."""

    def __init__(self, config: Config, client, project_dir: str = "."):
        """Initialize the installer.

        Args:
            config: Supplies the vendor directory.
            client: Registry client; only ``fetch_archive`` is used.
            project_dir: Project root holding ``Proto.toml``.
        """
        self._client = client
        self._project_dir = project_dir
        self._vendor_root = os.path.join(project_dir, config.vendor_dir)
        self._lock_path = os.path.join(project_dir, Constants.INSTALL_LOCK_FILE)

    @property
    def vendor_root(self) -> str:
        return self._vendor_root

    def package_dir(self, name: str) -> str:
        return os.path.join(self._vendor_root, name)

    @contextlib.contextmanager
    def _exclusive(self) -> Iterator[None]:
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise InstallError(
                f"Another install is running in {os.path.abspath(self._project_dir)} "
                f"(remove {Constants.INSTALL_LOCK_FILE} if it is stale)"
            ) from e
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self._lock_path)

    def is_installed(self, pkg: LockedPackage) -> bool:
        """True when the files on disk recompute to the locked digest."""
        try:
            return digest_tree(self.package_dir(pkg.name)) == pkg.digest
        except (IntegrityError, OSError) as e:
            logger.debug("Installed copy of %s is not usable: %s", pkg.name, e)
            return False

    async def _obtain(
        self, pkg: LockedPackage, archives: Mapping[str, PackageArchive]
    ) -> PackageArchive:
        archive = archives.get(pkg.name)
        if archive is not None and archive.version == pkg.version:
            logger.debug("Reusing downloaded archive for %s@%s", pkg.name, pkg.version)
        else:
            archive = await self._client.fetch_archive(pkg.repository, pkg.name, pkg.version)
        if archive.digest != pkg.digest:
            raise DigestMismatch(pkg.name, pkg.version, pkg.digest, archive.digest)
        return archive

    async def install(
        self,
        lockfile: Lockfile,
        archives: Optional[Mapping[str, PackageArchive]] = None,
    ) -> List[str]:
        """Install every locked package and prune the ones no longer locked.

        Args:
            lockfile: The locked graph to materialize.
            archives: Archives already downloaded in this run, keyed by name.

        Returns:
            list: Vendor directories of all locked packages, sorted.

        Raises:
            DigestMismatch: fetched or extracted content differs from the lockfile.
            InstallError: another install holds the project lock, or the tree
                could not be written.
        """
        with self._exclusive():
            pending = [pkg for pkg in lockfile.packages if not self.is_installed(pkg)]
            skipped = len(lockfile.packages) - len(pending)
            if is_debug_enabled(logger):
                logger.debug(
                    "Install plan",
                    extra=extra_context(
                        event="install_plan",
                        component="installer",
                        count=len(pending),
                        outcome=f"{skipped} up to date",
                    ),
                )

            fetched = await gather_all(self._obtain(pkg, archives or {}) for pkg in pending)
            self._commit(lockfile, dict(zip((p.name for p in pending), fetched)))

            for pkg in pending:
                logger.info("+ installed %s/%s@%s", pkg.repository, pkg.name, pkg.version)
            if skipped:
                logger.info("%d package(s) already up to date", skipped)
            return sorted(self.package_dir(pkg.name) for pkg in lockfile.packages)

    def _commit(self, lockfile: Lockfile, fetched: Dict[str, PackageArchive]) -> None:
        locked = {pkg.name: pkg for pkg in lockfile.packages}
        stale = []
        if os.path.isdir(self._vendor_root):
            stale = sorted(
                entry for entry in os.listdir(self._vendor_root)
                if entry not in locked and os.path.isdir(os.path.join(self._vendor_root, entry))
            )
        if not fetched and not stale:
            return

        parent = os.path.dirname(os.path.abspath(self._vendor_root))
        try:
            os.makedirs(parent, exist_ok=True)
            staging = tempfile.mkdtemp(prefix=".protopack-staging-", dir=parent)
        except OSError as e:
            raise InstallError(f"Cannot create staging directory in {parent}: {e}") from e

        created_root = not os.path.isdir(self._vendor_root)
        moves: List[Tuple[str, str]] = []
        keep_staging = False
        try:
            for name in sorted(fetched):
                archive = fetched[name]
                target = os.path.join(staging, "new", name)
                extract(archive, target)
                actual = digest_tree(target)
                if actual != locked[name].digest:
                    raise DigestMismatch(name, archive.version, locked[name].digest, actual or "<none>")

            os.makedirs(self._vendor_root, exist_ok=True)
            retired = os.path.join(staging, "old")
            os.makedirs(retired)
            for name in sorted(fetched):
                dest = self.package_dir(name)
                if os.path.lexists(dest):
                    _move(dest, os.path.join(retired, name), moves)
                _move(os.path.join(staging, "new", name), dest, moves)
            for name in stale:
                _move(self.package_dir(name), os.path.join(retired, name), moves)
        except OSError as e:
            if not self._rollback(moves):
                keep_staging = True
                raise InstallError(
                    f"Failed to write {self._vendor_root}: {e}; previous packages were "
                    f"left in {staging}"
                ) from e
            if created_root:
                with contextlib.suppress(OSError):
                    os.rmdir(self._vendor_root)
            raise InstallError(f"Failed to write {self._vendor_root}: {e}") from e
        finally:
            if not keep_staging:
                shutil.rmtree(staging, ignore_errors=True)

        for name in stale:
            logger.info("- removed %s", name)

    def _rollback(self, moves: List[Tuple[str, str]]) -> bool:
        """Undo completed moves newest first. Returns False if any could not be undone."""
        restored = True
        for src, dst in reversed(moves):
            try:
                os.replace(dst, src)
            except OSError as e:
                logger.error("Could not restore %s from %s: %s", src, dst, e)
                restored = False
        if moves and restored:
            logger.debug("Rolled back %d move(s) in %s", len(moves), self._vendor_root)
        return restored

    def uninstall(self) -> bool:
        """Remove the vendor tree. Returns False when there was nothing to remove."""
        with self._exclusive():
            if not os.path.isdir(self._vendor_root):
                return False
            shutil.rmtree(self._vendor_root)
            logger.info("Removed %s", self._vendor_root)
            return True


def _move(src: str, dst: str, moves: List[Tuple[str, str]]) -> None:
    os.replace(src, dst)
    moves.append((src, dst))
