"""Dependency graph resolution."""

from .models import (
    DependencyGraph,
    Dependent,
    OptionalWarning,
    PackageKind,
    PeerWarning,
    ResolutionResult,
    ResolvedPackage,
    VersionConflict,
)
from .resolver import DependencyResolver, select_version

__all__ = [
    "DependencyGraph",
    "DependencyResolver",
    "Dependent",
    "OptionalWarning",
    "PackageKind",
    "PeerWarning",
    "ResolutionResult",
    "ResolvedPackage",
    "VersionConflict",
    "select_version",
]
