"""Data models for resolved dependency graphs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

ROOT = "root"


class PackageKind(Enum):
    """Where a resolved package comes from."""
    REGISTRY = "registry"
    LOCAL = "local"
    ALIAS = "alias"
    REMOTE = "remote"


@dataclass
class ResolvedPackage:
    """One package in the flattened graph.

    Dependency maps keep the raw manifest strings so they serialize back
    unchanged.
    """
    name: str
    version: str
    kind: PackageKind = PackageKind.REGISTRY
    dependencies: Dict[str, str] = field(default_factory=dict)
    peer_dependencies: Dict[str, str] = field(default_factory=dict)
    optional_dependencies: Dict[str, str] = field(default_factory=dict)
    integrity: Optional[str] = None
    shasum: Optional[str] = None
    tarball_url: Optional[str] = None
    parent: Optional[str] = None
    real_name: Optional[str] = None
    resolved: Optional[str] = None

    @property
    def registry_name(self) -> str:
        """Name to look up in the registry (the target of an alias)."""
        return self.real_name or self.name


@dataclass(frozen=True)
class PeerWarning:
    """A declared peer dependency that is absent or at a non-matching version."""
    package: str
    version: str
    peer: str
    required: str
    found: Optional[str] = None

    @property
    def missing(self) -> bool:
        return self.found is None

    @property
    def message(self) -> str:
        if self.missing:
            return (
                f"Peer dependency missing: {self.package}@{self.version} "
                f"requires {self.peer}@{self.required}"
            )
        return (
            f"Peer dependency version mismatch: {self.package}@{self.version} "
            f"requires {self.peer}@{self.required}, found {self.found}"
        )

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class OptionalWarning:
    """An optional dependency that failed to resolve or was skipped for this platform."""
    package: str
    version: str
    dependency: str
    requested: str
    reason: str
    platform_skip: bool = False

    @property
    def message(self) -> str:
        if self.platform_skip:
            return (
                f"Skipping platform-specific optional dependency: {self.package}@{self.version} "
                f"optional {self.dependency}@{self.requested} ({self.reason})"
            )
        return (
            f"Optional dependency failed: {self.package}@{self.version} "
            f"optional {self.dependency}@{self.requested} ({self.reason})"
        )

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Dependent:
    """Who asked for a package: requester name, requested version/range, relationship."""
    name: str
    version: str
    source: str


@dataclass
class VersionConflict:
    """Two or more distinct versions requested for one package name."""
    package: str
    versions: Tuple[str, ...]
    dependents: List[Dependent] = field(default_factory=list)
    selected: Optional[str] = None
    severity: float = 0.0


@dataclass
class DependencyGraph:
    """Flat ``name -> ResolvedPackage`` map plus non-fatal diagnostics."""
    packages: Dict[str, ResolvedPackage] = field(default_factory=dict)
    peer_warnings: List[PeerWarning] = field(default_factory=list)
    optional_warnings: List[OptionalWarning] = field(default_factory=list)

    def add(self, package: ResolvedPackage) -> None:
        self.packages[package.name] = package

    def get(self, name: str) -> Optional[ResolvedPackage]:
        return self.packages.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.packages

    def __getitem__(self, name: str) -> ResolvedPackage:
        return self.packages[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)


@dataclass
class ResolutionResult:
    """Outcome of one resolver invocation."""
    graph: DependencyGraph
    conflicts: List[VersionConflict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def peer_warnings(self) -> List[PeerWarning]:
        return self.graph.peer_warnings

    @property
    def optional_warnings(self) -> List[OptionalWarning]:
        return self.graph.optional_warnings
