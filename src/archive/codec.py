"""Package archive codec.

An archive is a gzip-compressed tar holding the embedded manifest
(``Proto.toml``) followed by the package files sorted by path. Tar headers
are normalized so packing the same content always yields the same bytes.

The digest is computed over a canonical stream of the uncompressed entries,
not over the tar or gzip bytes, so it does not depend on compression level
or header details::

    for each entry (manifest first, then files sorted by path):
        path NUL decimal-length NUL content
"""
from __future__ import annotations

import hashlib
import io
import logging
import os
import tarfile
import zlib
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from common.errors import CorruptArchive, IdentityMismatch, ParseError, PathTraversal
from constants import Constants
from manifest import Manifest, PackageIdentity, PackageVersion, parse, serialize

logger = logging.getLogger(__name__)

MAX_UNPACKED_BYTES = 256 * 1024 * 1024


@dataclass(frozen=True)
class FileEntry:
    """One file of a package: relative posix path and content."""
    path: str
    data: bytes


@dataclass
class PackageArchive:
    """A packed package ready for transfer."""
    manifest: Manifest
    files: List[FileEntry]
    digest: str
    data: bytes = field(repr=False)
    manifest_bytes: bytes = field(default=b"", repr=False)

    @property
    def name(self) -> str:
        return self.manifest.package.name

    @property
    def version(self) -> str:
        return self.manifest.package.version

    @property
    def package_version(self) -> PackageVersion:
        return self.manifest.package.package_version

    @property
    def filename(self) -> str:
        return archive_filename(self.name, self.version)


def archive_filename(name: str, version: str) -> str:
    return f"{name}-{version}{Constants.ARCHIVE_EXTENSION}"


def canonical_path(path: str) -> str:
    """Validate an entry path and return it in canonical form.

    Raises:
        PathTraversal: absolute paths, drive letters, backslashes, ``..`` or
            empty components.
    """
    if not isinstance(path, str) or not path:
        raise PathTraversal(str(path))
    candidate = path[2:] if path.startswith("./") else path
    if "\\" in candidate or "\x00" in candidate or candidate.startswith("/"):
        raise PathTraversal(path)
    parts = candidate.split("/")
    if ":" in parts[0]:
        raise PathTraversal(path)
    for part in parts:
        if part in ("", ".", ".."):
            raise PathTraversal(path)
    return candidate


def compute_digest(manifest_bytes: bytes, files: Iterable[FileEntry]) -> str:
    """Digest of the canonical entry stream; ``files`` must already be sorted."""
    hasher = hashlib.new(Constants.DIGEST_ALGORITHM)
    entries: List[Tuple[str, bytes]] = [(Constants.MANIFEST_FILE, manifest_bytes)]
    entries.extend((f.path, f.data) for f in files)
    for path, data in entries:
        hasher.update(path.encode("utf-8"))
        hasher.update(b"\x00")
        hasher.update(str(len(data)).encode("ascii"))
        hasher.update(b"\x00")
        hasher.update(data)
    return f"{Constants.DIGEST_ALGORITHM}:{hasher.hexdigest()}"


def _canonical_files(files: Iterable[Tuple[str, bytes]]) -> List[FileEntry]:
    entries = {}
    for path, data in files:
        cpath = canonical_path(path)
        if cpath == Constants.MANIFEST_FILE:
            raise CorruptArchive(f"File entry collides with the embedded manifest: {path}")
        if cpath in entries:
            raise CorruptArchive(f"Duplicate file entry: {cpath}")
        entries[cpath] = FileEntry(cpath, bytes(data))
    return [entries[p] for p in sorted(entries)]


def _tar_info(path: str, size: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=path)
    info.size = size
    info.mtime = 0
    info.mode = 0o644
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.type = tarfile.REGTYPE
    return info


def pack(manifest: Manifest, files: Iterable[Tuple[str, bytes]]) -> PackageArchive:
    """Build a PackageArchive from a manifest and (path, bytes) pairs.

    Raises:
        ValueError: the manifest has no [package] section.
        PathTraversal, CorruptArchive: invalid or duplicate file paths.
    """
    if manifest.package is None:
        raise ValueError("Only manifests with a [package] section can be packed")
    manifest_bytes = serialize(manifest)
    entries = _canonical_files(files)

    tar_buf = io.BytesIO()
    with tarfile.open(fileobj=tar_buf, mode="w", format=tarfile.GNU_FORMAT) as tar:
        tar.addfile(_tar_info(Constants.MANIFEST_FILE, len(manifest_bytes)), io.BytesIO(manifest_bytes))
        for entry in entries:
            tar.addfile(_tar_info(entry.path, len(entry.data)), io.BytesIO(entry.data))

    # Raw gzip stream with a zeroed header timestamp and no embedded filename
    compressor = zlib.compressobj(9, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
    data = compressor.compress(tar_buf.getvalue()) + compressor.flush()

    digest = compute_digest(manifest_bytes, entries)
    logger.debug(
        "Packed %s (%d files, %d bytes, %s)",
        manifest.package.package_version, len(entries), len(data), digest,
    )
    return PackageArchive(
        manifest=manifest, files=entries, digest=digest, data=data, manifest_bytes=manifest_bytes
    )


def _decompress(data: bytes) -> bytes:
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        raw = decompressor.decompress(data, MAX_UNPACKED_BYTES + 1)
    except zlib.error as e:
        raise CorruptArchive(f"Invalid gzip stream: {e}") from e
    if len(raw) > MAX_UNPACKED_BYTES or decompressor.unconsumed_tail:
        raise CorruptArchive("Archive exceeds the maximum unpacked size")
    if not decompressor.eof:
        raise CorruptArchive("Truncated gzip stream")
    return raw


def unpack(
    data: bytes,
    expected_name: Optional[str] = None,
    expected_version: Optional[str] = None,
) -> PackageArchive:
    """Decode archive bytes and recompute the digest.

    Args:
        data: Compressed archive bytes.
        expected_name: Identity the archive was fetched under, if known.
        expected_version: Version the archive was fetched under, if known.

    Raises:
        CorruptArchive: undecodable container or missing/invalid manifest.
        PathTraversal: an entry is not a regular file or escapes the root.
        IdentityMismatch: embedded manifest differs from the fetch key.
    """
    raw = _decompress(data)
    manifest_bytes: Optional[bytes] = None
    files: List[Tuple[str, bytes]] = []
    try:
        with tarfile.open(fileobj=io.BytesIO(raw), mode="r:") as tar:
            for member in tar.getmembers():
                path = canonical_path(member.name.rstrip("/") if member.isdir() else member.name)
                if member.isdir():
                    continue
                if not member.isreg():
                    raise PathTraversal(member.name)
                fh = tar.extractfile(member)
                content = fh.read() if fh is not None else b""
                if path == Constants.MANIFEST_FILE:
                    if manifest_bytes is not None:
                        raise CorruptArchive("Archive contains more than one manifest")
                    manifest_bytes = content
                else:
                    files.append((path, content))
    except tarfile.TarError as e:
        raise CorruptArchive(f"Invalid tar container: {e}") from e

    if manifest_bytes is None:
        raise CorruptArchive(f"Archive has no {Constants.MANIFEST_FILE}")
    try:
        manifest = parse(manifest_bytes)
    except ParseError as e:
        raise CorruptArchive(f"Embedded manifest is invalid: {e}") from e
    if manifest.package is None:
        raise CorruptArchive("Embedded manifest has no [package] section")

    actual = manifest.package.package_version
    if expected_name is not None or expected_version is not None:
        expected = PackageVersion(
            PackageIdentity(expected_name or actual.identity.name, actual.identity.kind),
            expected_version or actual.version,
        )
        if expected != actual:
            raise IdentityMismatch(str(expected), str(actual))

    entries = _canonical_files(files)
    return PackageArchive(
        manifest=manifest,
        files=entries,
        digest=compute_digest(manifest_bytes, entries),
        data=data,
        manifest_bytes=manifest_bytes,
    )


def _safe_destination(root: str, path: str) -> str:
    real_root = os.path.realpath(root)
    dest = os.path.realpath(os.path.join(real_root, *canonical_path(path).split("/")))
    if os.path.commonpath([real_root, dest]) != real_root or dest == real_root:
        raise PathTraversal(path)
    return dest


def extract(archive: PackageArchive, target_dir: str) -> List[str]:
    """Write the archive's manifest and files below ``target_dir``.

    Every destination is checked against the resolved target directory before
    anything is written.
    """
    plan = [(Constants.MANIFEST_FILE, archive.manifest_bytes or serialize(archive.manifest))]
    plan.extend((f.path, f.data) for f in archive.files)
    destinations = [(_safe_destination(target_dir, path), data) for path, data in plan]

    written = []
    for dest, data in destinations:
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        with open(dest, "wb") as fh:
            fh.write(data)
        written.append(dest)
    return written


def read_tree(root: str) -> Tuple[Optional[bytes], List[FileEntry]]:
    """Read an extracted package tree back as (manifest bytes, sorted files)."""
    manifest_bytes = None
    collected: List[Tuple[str, bytes]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            full = os.path.join(dirpath, filename)
            rel = os.path.relpath(full, root).replace(os.sep, "/")
            with open(full, "rb") as fh:
                content = fh.read()
            if rel == Constants.MANIFEST_FILE:
                manifest_bytes = content
            else:
                collected.append((rel, content))
    return manifest_bytes, _canonical_files(collected)


def digest_tree(root: str) -> Optional[str]:
    """Recompute the digest of an extracted package, or None if it is not one."""
    if not os.path.isdir(root):
        return None
    manifest_bytes, files = read_tree(root)
    if manifest_bytes is None:
        return None
    return compute_digest(manifest_bytes, files)
