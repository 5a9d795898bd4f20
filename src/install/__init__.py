"""Vendor tree installer and local file collection."""

from .collect import collect_files
from .installer import Installer

__all__ = ["Installer", "collect_files"]
