"""Collect the local package's schema files."""

import logging
import os
from typing import List, Optional, Tuple

from constants import Constants

logger = logging.getLogger(__name__)


def collect_files(root: str = ".", vendor_dir: Optional[str] = None) -> List[Tuple[str, bytes]]:
    """Return ``(path, content)`` pairs for the schema files of the package at ``root``.

    Paths are posix and relative to the ``proto/`` directory; the vendor
    directory is skipped. The result is sorted by path.

    Args:
        root: Project directory holding ``Proto.toml``.
        vendor_dir: Vendor directory relative to ``root`` (default ``proto/vendor``).

    Returns:
        list: Sorted (relative posix path, bytes) pairs; empty when there is no ``proto/``.
    """
    proto_root = os.path.join(root, Constants.PROTO_DIR)
    vendor_root = os.path.realpath(os.path.join(root, vendor_dir or Constants.VENDOR_DIR))
    collected: List[Tuple[str, bytes]] = []
    if not os.path.isdir(proto_root):
        logger.debug("No %s directory under %s", Constants.PROTO_DIR, root)
        return collected

    for dirpath, dirnames, filenames in os.walk(proto_root):
        dirnames[:] = sorted(
            d for d in dirnames if os.path.realpath(os.path.join(dirpath, d)) != vendor_root
        )
        for filename in sorted(filenames):
            if not filename.endswith(Constants.SCHEMA_SUFFIX):
                continue
            full = os.path.join(dirpath, filename)
            rel = os.path.relpath(full, proto_root).replace(os.sep, "/")
            with open(full, "rb") as fh:
                collected.append((rel, fh.read()))
    collected.sort(key=lambda item: item[0])
    logger.debug("Collected %d schema file(s) from %s", len(collected), proto_root)
    return collected
