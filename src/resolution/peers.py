"""Automatic resolution of missing peer dependencies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from common.errors import BlazeError
from registry.metadata_cache import MetadataCache
from versioning import semver

from .models import PeerWarning

logger = logging.getLogger(__name__)


@dataclass
class PeerIncompatibility:
    peer: str
    required: str
    existing: str

    @property
    def message(self) -> str:
        return f"{self.peer}: requires {self.required}, but {self.existing} is installed"


@dataclass
class PeerResolution:
    """Outcome of ``PeerDependencyResolver.auto_resolve``."""
    dependencies: Dict[str, str]
    added: Dict[str, str] = field(default_factory=dict)
    unresolved: Dict[str, List[str]] = field(default_factory=dict)
    incompatibilities: List[PeerIncompatibility] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added)


class PeerDependencyResolver:
    """Turns "peer missing" warnings into extra top-level dependencies."""

    def __init__(self, metadata: MetadataCache, offline: bool = False):
        self.metadata = metadata
        self.offline = offline

    @staticmethod
    def extract_requirements(warnings: Iterable[PeerWarning]) -> Dict[str, Set[str]]:
        """Collect the ranges requested for every missing peer."""
        requirements: Dict[str, Set[str]] = {}
        for warning in warnings:
            if warning.missing:
                requirements.setdefault(warning.peer, set()).add(warning.required)
        return requirements

    async def find_compatible_version(self, name: str, ranges: Sequence[str]) -> Optional[str]:
        """Highest published version satisfying every range, else the highest satisfying any."""
        try:
            meta = await self.metadata.get(name, offline=self.offline)
        except BlazeError as exc:
            logger.warning("Could not fetch metadata for %s: %s", name, exc)
            return None
        versions = semver.sort_versions((meta.get("versions") or {}).keys())
        for version in reversed(versions):
            if all(semver.satisfies(version, rng) for rng in ranges):
                return version
        for version in reversed(versions):
            if any(semver.satisfies(version, rng) for rng in ranges):
                return version
        return None

    @staticmethod
    def check_compatibility(
        peers: Mapping[str, str], existing: Mapping[str, str]
    ) -> List[PeerIncompatibility]:
        """Report peers whose existing declared version does not satisfy the peer range."""
        found = []
        for peer, required in peers.items():
            current = existing.get(peer)
            if current is None:
                continue
            exact = semver.parse_version(current)
            if exact is not None and not semver.satisfies(current, required):
                found.append(PeerIncompatibility(peer, required, current))
            elif exact is None and not semver.specs_compatible(current, required):
                found.append(PeerIncompatibility(peer, required, current))
        return found

    async def auto_resolve(
        self, warnings: Iterable[PeerWarning], existing: Mapping[str, str]
    ) -> PeerResolution:
        """Resolve missing peers and merge them into ``existing``.

        Args:
            warnings: Peer warnings from a resolution result.
            existing: Dependencies the project already declares.

        Returns:
            PeerResolution: Merged dependency map plus what was added.
        """
        requirements = self.extract_requirements(warnings)
        result = PeerResolution(dependencies=dict(existing))
        if not requirements:
            return result
        logger.info("Found %d peer dependencies to resolve", len(requirements))

        wanted: Dict[str, str] = {}
        for peer in sorted(requirements):
            ranges = sorted(requirements[peer])
            if peer in existing:
                for rng in ranges:
                    result.incompatibilities.extend(self.check_compatibility({peer: rng}, existing))
                continue
            version = await self.find_compatible_version(peer, ranges)
            if version is None:
                logger.warning(
                    "Could not resolve peer dependency %s for ranges: %s", peer, ", ".join(ranges)
                )
                result.unresolved[peer] = ranges
                continue
            wanted[peer] = version
            for rng in ranges:
                if not semver.satisfies(version, rng):
                    result.incompatibilities.append(PeerIncompatibility(peer, rng, version))

        for incompat in result.incompatibilities:
            logger.warning("Peer dependency incompatibility: %s", incompat.message)

        result.added = wanted
        result.dependencies.update(wanted)
        return result
