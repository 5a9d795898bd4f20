"""Package archive codec: canonical tar.gz packing, unpacking and digests."""

from .codec import (
    FileEntry,
    PackageArchive,
    archive_filename,
    canonical_path,
    compute_digest,
    digest_tree,
    extract,
    pack,
    unpack,
)

__all__ = [
    "FileEntry",
    "PackageArchive",
    "archive_filename",
    "canonical_path",
    "compute_digest",
    "digest_tree",
    "extract",
    "pack",
    "unpack",
]
