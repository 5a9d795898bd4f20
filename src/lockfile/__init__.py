"""Lockfile model: persisted, verifiable resolution results."""

from .model import LockedPackage, Lockfile, LockStatus

__all__ = ["LockedPackage", "Lockfile", "LockStatus"]
