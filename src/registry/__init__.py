"""Registry transport."""

from .client import RegistryClient

__all__ = ["RegistryClient"]
