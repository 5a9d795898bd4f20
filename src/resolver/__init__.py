"""Dependency resolution: single version per package name, highest compatible wins."""

from .graph import DependencyGraph, ResolvedNode
from .resolver import PendingRequirement, Resolution, Resolver

__all__ = [
    "DependencyGraph",
    "PendingRequirement",
    "Resolution",
    "ResolvedNode",
    "Resolver",
]
