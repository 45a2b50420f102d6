"""Data models for dependency specifiers.

A dependency specifier is a tagged union: every variant carries the raw
string it was parsed from plus a ``kind`` tag, and consumers dispatch on the
variant type.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class SpecKind(Enum):
    """Variant tag of a dependency specifier."""
    REGISTRY = "registry"
    LOCAL = "local"
    REMOTE = "remote"
    ALIAS = "alias"


class ResolutionMode(Enum):
    """How a registry specifier selects a version."""
    EXACT = "exact"
    RANGE = "range"
    LATEST = "latest"
    TAG = "tag"


class LocalProtocol(Enum):
    """Local path protocols: ``file:`` copies, ``link:`` symlinks."""
    FILE = "file"
    LINK = "link"


@dataclass(frozen=True)
class RegistrySpec:
    """Semver range, exact version, dist-tag or empty (latest)."""
    raw: str
    mode: ResolutionMode
    kind: SpecKind = field(default=SpecKind.REGISTRY, init=False)

    @property
    def range(self) -> str:
        return self.raw.strip()


@dataclass(frozen=True)
class LocalSpec:
    """``file:<path>`` or ``link:<path>`` dependency."""
    raw: str
    protocol: LocalProtocol
    path: str
    kind: SpecKind = field(default=SpecKind.LOCAL, init=False)


@dataclass(frozen=True)
class RemoteSpec:
    """Archive URL or VCS locator recorded verbatim.

    ``archive_url`` is the HTTPS tarball to fetch, when there is one: the URL
    itself for archive specs, the codeload URL for GitHub shorthands, and None
    for other VCS locators.
    """
    raw: str
    url: str
    vcs: bool
    archive_url: Optional[str] = None
    kind: SpecKind = field(default=SpecKind.REMOTE, init=False)


@dataclass(frozen=True)
class AliasSpec:
    """``npm:<real-name>@<range>`` alias."""
    raw: str
    real_name: str
    real_range: str
    kind: SpecKind = field(default=SpecKind.ALIAS, init=False)


DependencySpec = Union[RegistrySpec, LocalSpec, RemoteSpec, AliasSpec]
