"""Dependency resolution into a flat, deduplicated graph.

Every request is resolved to completion: each ``(name, version)`` pair the
walk reaches is recorded, and only after the whole walk finishes does a
deduplication pass keep one entry per name (the highest version). Failures
and peer dependency checks are also evaluated over the finished walk, so the
result does not depend on which concurrent request happened to finish first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import replace
from typing import Any, DefaultDict, Dict, List, Mapping, NamedTuple, Optional, Set, Tuple

from common.concurrency import gather_or_cancel
from common.config import CoreConfig
from common.errors import AliasCycleError, AliasDepthError, BlazeError, ResolutionError
from common.logging_utils import Timer, extra_context
from registry.metadata_cache import MetadataCache
from versioning import semver
from versioning.models import AliasSpec, LocalSpec, RegistrySpec, RemoteSpec
from versioning.parser import parse_dependency_spec

from .conflicts import detect_conflicts
from .models import (
    ROOT,
    Dependent,
    DependencyGraph,
    OptionalWarning,
    PackageKind,
    PeerWarning,
    ResolutionResult,
    ResolvedPackage,
)
from .platform import current_platform, is_package_compatible, is_platform_specific_package

logger = logging.getLogger(__name__)

_Selection = Tuple[str, Dict[str, Any]]
_Node = Tuple[str, str]


def select_version(name: str, meta: Mapping[str, Any], requested: str) -> Tuple[str, Optional[str]]:
    """Pick a concrete version from a packument.

    Order: an exact dist-tag match; ``latest`` for an empty or ``"latest"``
    request; the highest version satisfying the range; otherwise
    ``dist-tags.latest`` (or the highest published version) with a warning.

    Returns:
        tuple: ``(version, warning or None)``.

    Raises:
        ResolutionError: nothing is published, or the tag points nowhere.
    """
    dist_tags = meta.get("dist-tags") or {}
    versions = list((meta.get("versions") or {}).keys())
    if not versions:
        raise ResolutionError(f"No versions published for {name}")
    requested = (requested or "").strip()

    warning = None
    if requested in ("", "latest"):
        selected = dist_tags.get("latest") or semver.highest_version(versions)
    elif requested in dist_tags:
        selected = dist_tags[requested]
    else:
        selected = semver.max_satisfying(versions, requested)
        if selected is None:
            selected = dist_tags.get("latest") or semver.highest_version(versions)
            warning = (
                f"No version of {name} satisfies {requested}; "
                f"using {selected} instead (available: {', '.join(semver.sort_versions(versions)[-5:])})"
            )
    if selected not in (meta.get("versions") or {}):
        raise ResolutionError(f"Version {selected} of {name} not found in registry metadata")
    return selected, warning


class DependencyResolver:
    """Resolves a requested dependency map against a registry.

    One instance can serve several ``resolve()`` calls; all per-call state
    lives in a private run object.
    """

    def __init__(self, metadata: MetadataCache, config: Optional[CoreConfig] = None):
        self.metadata = metadata
        self.config = config or CoreConfig()

    async def resolve(self, requested: Mapping[str, str], offline: bool = False) -> ResolutionResult:
        """Resolve ``requested`` (name -> manifest spec) into a graph.

        Args:
            requested: Top-level dependency map.
            offline: Use cached registry metadata only.

        Returns:
            ResolutionResult: Graph with peer/optional warnings, conflicts and
            resolution warnings.

        Raises:
            OfflineError: offline and some metadata is not cached.
            AliasError: an alias chain cycles or is too deep.
            RegistryError, ResolutionError: a required package cannot be resolved.
        """
        run = _ResolveRun(self.metadata, self.config, offline)
        with Timer() as timer:
            result = await run.execute(dict(requested))
        logger.info(
            "Resolved %d packages (%d conflicts)",
            len(result.graph),
            len(result.conflicts),
            extra=extra_context(
                event="resolve",
                component="resolver",
                outcome="success",
                count=len(result.graph),
                duration_ms=timer.duration_ms(),
            ),
        )
        return result


class _Edge(NamedTuple):
    """Outcome of one dependency request: the node it reached, or the error."""

    name: str
    requested: str
    optional: bool
    target: Optional[_Node] = None
    error: Optional[BlazeError] = None


def _node(package: ResolvedPackage) -> _Node:
    return (package.registry_name, package.version)


def _replaces(existing: ResolvedPackage, candidate: ResolvedPackage) -> bool:
    """Whether ``candidate`` takes the slot ``existing`` holds for one name and version.

    A registry package beats an alias; between two aliases the one pointing
    at the lower real name wins.
    """
    if existing.kind != PackageKind.ALIAS:
        return False
    if candidate.kind != PackageKind.ALIAS:
        return True
    return (candidate.real_name or "") < (existing.real_name or "")


class _ResolveRun:  # pylint: disable=too-many-instance-attributes
    """State for a single resolution walk.

    Walking never raises for a package that cannot be resolved. Each request
    is recorded as an edge holding its target or its error, and failures are
    attributed once the walk is complete: an error reachable from a top-level
    request through required edges is fatal, one reachable only through an
    optional edge becomes a warning.
    """

    def __init__(self, metadata: MetadataCache, config: CoreConfig, offline: bool):
        self.metadata = metadata
        self.config = config
        self.offline = offline
        self.semaphore = asyncio.Semaphore(config.concurrency)
        self.candidates: DefaultDict[str, Dict[str, ResolvedPackage]] = defaultdict(dict)
        self.dependents: DefaultDict[str, List[Dependent]] = defaultdict(list)
        self.parents: DefaultDict[Tuple[str, str], Set[Optional[str]]] = defaultdict(set)
        self.walked: Set[_Node] = set()
        self.edges: Dict[_Node, List[_Edge]] = {}
        self.selections: Dict[Tuple[str, str], "asyncio.Future[_Selection]"] = {}
        self.optional_warnings: List[OptionalWarning] = []
        self.warnings: List[str] = []

    async def execute(self, requested: Dict[str, str]) -> ResolutionResult:
        roots = await gather_or_cancel(
            self.follow(name, spec, None, ROOT) for name, spec in requested.items()
        )
        failures = self._failures()
        for edge in roots:
            error = edge.error or failures.get(edge.target)
            if error is not None:
                raise error
        self._warn_optional_failures(failures)
        self._discard(failures)

        graph = DependencyGraph()
        conflicts = detect_conflicts(
            {name: list(versions) for name, versions in self.candidates.items()},
            self.dependents,
        )
        selected = {c.package: c.selected for c in conflicts}
        self.warnings.sort()
        for conflict in conflicts:
            message = (
                f"Resolved version conflict for {conflict.package}: "
                f"{', '.join(conflict.versions)} -> {conflict.selected}"
            )
            logger.warning(message)
            self.warnings.append(message)

        for name in sorted(self.candidates):
            versions = self.candidates[name]
            version = selected.get(name) or next(iter(versions))
            package = versions[version]
            graph.add(replace(package, parent=self._pick_parent(name, version)))

        self._prune(graph, requested)
        graph.peer_warnings = self._check_peers(graph)
        graph.optional_warnings = sorted(
            self.optional_warnings, key=lambda w: (w.package, w.dependency)
        )
        for warning in graph.peer_warnings:
            logger.warning(warning.message)
        return ResolutionResult(graph=graph, conflicts=conflicts, warnings=self.warnings)

    async def follow(
        self, name: str, raw: str, parent: Optional[str], source: str, optional: bool = False
    ) -> _Edge:
        """Run one request and record how it ended."""
        try:
            package = await self.request(name, raw, parent, source)
        except BlazeError as exc:
            return _Edge(name, raw, optional, error=exc)
        return _Edge(name, raw, optional, target=_node(package))

    async def request(
        self,
        name: str,
        raw: str,
        parent: Optional[str],
        source: str,
        chain: Tuple[str, ...] = (),
    ) -> ResolvedPackage:
        """Resolve one ``name@raw`` request and walk whatever it selects."""
        raw = "" if raw is None else str(raw)
        self.dependents[name].append(Dependent(name=parent or ROOT, version=raw, source=source))
        spec = parse_dependency_spec(raw)

        if isinstance(spec, AliasSpec):
            return await self._resolve_alias(name, spec, parent, chain)
        if isinstance(spec, (LocalSpec, RemoteSpec)):
            return self._record_verbatim(name, spec, parent)
        if isinstance(spec, RegistrySpec):
            version, manifest = await self._select(name, spec.range)
            package = self._record_registry(name, version, manifest, parent)
            await self._walk(package, manifest)
            return package
        raise ResolutionError(f"Unsupported dependency specifier for {name}: {raw!r}")

    def _record_verbatim(self, name: str, spec, parent: Optional[str]) -> ResolvedPackage:
        kind = PackageKind.LOCAL if isinstance(spec, LocalSpec) else PackageKind.REMOTE
        existing = self.candidates[name].get(spec.raw)
        self.parents[(name, spec.raw)].add(parent)
        if existing is not None:
            return existing
        package = ResolvedPackage(
            name=name,
            version=spec.raw,
            kind=kind,
            resolved=spec.raw,
            tarball_url=getattr(spec, "archive_url", None),
        )
        self.candidates[name][spec.raw] = package
        return package

    async def _resolve_alias(
        self, name: str, spec: AliasSpec, parent: Optional[str], chain: Tuple[str, ...]
    ) -> ResolvedPackage:
        path = (*chain, name)
        if name in chain:
            raise AliasCycleError(f"Alias cycle detected: {' -> '.join(path)}", chain=path)
        if len(chain) >= self.config.alias_max_depth:
            raise AliasDepthError(
                f"Alias chain too deep (>{self.config.alias_max_depth}): {' -> '.join(path)}",
                chain=path,
            )
        real = await self.request(spec.real_name, spec.real_range, parent, "alias", path)
        alias = replace(
            real,
            name=name,
            kind=PackageKind.ALIAS,
            real_name=real.registry_name,
            parent=parent,
        )
        self._store(alias)
        self.parents[(name, alias.version)].add(parent)
        return alias

    async def _select(self, name: str, requested: str) -> _Selection:
        key = (name, requested)
        pending = self.selections.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_and_select(name, requested))
            self.selections[key] = pending
        return await asyncio.shield(pending)

    async def _fetch_and_select(self, name: str, requested: str) -> _Selection:
        async with self.semaphore:
            meta = await self.metadata.get(name, offline=self.offline)
        version, warning = select_version(name, meta, requested)
        if warning:
            logger.warning(warning)
            self.warnings.append(warning)
        return version, meta["versions"][version]

    def _record_registry(
        self, name: str, version: str, manifest: Mapping[str, Any], parent: Optional[str]
    ) -> ResolvedPackage:
        self.parents[(name, version)].add(parent)
        existing = self.candidates[name].get(version)
        if existing is not None and existing.kind == PackageKind.REGISTRY:
            return existing
        dist = manifest.get("dist") or {}
        package = ResolvedPackage(
            name=name,
            version=version,
            kind=PackageKind.REGISTRY,
            dependencies=dict(manifest.get("dependencies") or {}),
            peer_dependencies=dict(manifest.get("peerDependencies") or {}),
            optional_dependencies=dict(manifest.get("optionalDependencies") or {}),
            integrity=dist.get("integrity"),
            shasum=dist.get("shasum"),
            tarball_url=dist.get("tarball"),
            parent=parent,
            resolved=version,
        )
        self._store(package)
        return package

    def _store(self, package: ResolvedPackage) -> None:
        """Record ``package`` as the candidate for its name and version."""
        slot = self.candidates[package.name]
        existing = slot.get(package.version)
        if existing is None:
            slot[package.version] = package
            return
        keep, drop = (package, existing) if _replaces(existing, package) else (existing, package)
        if keep.kind != PackageKind.ALIAS and drop.kind == PackageKind.ALIAS:
            message = (
                f"Package {keep.name}@{keep.version} replaces alias "
                f"{drop.name} -> {drop.real_name}@{drop.version}"
            )
            if message not in self.warnings:
                logger.warning(message)
                self.warnings.append(message)
        slot[package.version] = keep

    async def _walk(self, package: ResolvedPackage, manifest: Mapping[str, Any]) -> None:
        key = _node(package)
        # the first walker records the edges; later requesters reuse them
        # once the walk is complete, which also terminates cycles
        if key in self.walked:
            return
        self.walked.add(key)

        optional = dict(manifest.get("optionalDependencies") or {})
        required = {
            dep: rng for dep, rng in (manifest.get("dependencies") or {}).items()
            if dep not in optional
        }
        edges = await gather_or_cancel(
            [self.follow(dep, rng, package.name, "dependency") for dep, rng in required.items()]
            + [self._follow_optional(package, dep, rng) for dep, rng in optional.items()]
        )
        self.edges[key] = [edge for edge in edges if edge is not None]

    async def _follow_optional(self, package: ResolvedPackage, name: str, raw: str) -> Optional[_Edge]:
        if is_platform_specific_package(name) and not is_package_compatible(name):
            warning = OptionalWarning(
                package=package.name,
                version=package.version,
                dependency=name,
                requested=raw,
                reason=f"incompatible with {current_platform().combined}",
                platform_skip=True,
            )
            logger.warning(warning.message)
            self.optional_warnings.append(warning)
            return None
        return await self.follow(name, raw, package.name, "optional", optional=True)

    def _failures(self) -> Dict[_Node, BlazeError]:
        """Map every walked node to the first error under it along required edges."""
        requesters: DefaultDict[_Node, List[_Node]] = defaultdict(list)
        failures: Dict[_Node, BlazeError] = {}
        queue: List[_Node] = []
        for node in sorted(self.edges):
            for edge in self.edges[node]:
                if edge.optional:
                    continue
                if edge.error is not None:
                    if node not in failures:
                        failures[node] = edge.error
                        queue.append(node)
                elif edge.target is not None:
                    requesters[edge.target].append(node)
        index = 0
        while index < len(queue):
            node = queue[index]
            index += 1
            for requester in requesters.get(node, ()):
                if requester not in failures:
                    failures[requester] = failures[node]
                    queue.append(requester)
        return failures

    def _warn_optional_failures(self, failures: Mapping[_Node, BlazeError]) -> None:
        for node in sorted(self.edges):
            name, version = node
            for edge in self.edges[node]:
                if not edge.optional:
                    continue
                error = edge.error or failures.get(edge.target)
                if error is None:
                    continue
                warning = OptionalWarning(
                    package=name,
                    version=version,
                    dependency=edge.name,
                    requested=edge.requested,
                    reason=str(error),
                )
                logger.warning(warning.message)
                self.optional_warnings.append(warning)

    def _discard(self, failures: Mapping[_Node, BlazeError]) -> None:
        """Drop candidates whose required subtree failed."""
        for name in list(self.candidates):
            versions = self.candidates[name]
            for version in [v for v, package in versions.items() if _node(package) in failures]:
                logger.debug("Dropping %s@%s: %s", name, version, failures[_node(versions[version])])
                del versions[version]
            if not versions:
                del self.candidates[name]

    def _pick_parent(self, name: str, version: str) -> Optional[str]:
        parents = self.parents.get((name, version), set())
        if not parents or None in parents:
            return None
        return min(parents)

    @staticmethod
    def _prune(graph: DependencyGraph, requested: Mapping[str, str]) -> None:
        """Drop entries only reachable through versions that lost deduplication."""
        reachable: Set[str] = set()
        queue = [name for name in requested if name in graph]
        while queue:
            name = queue.pop()
            if name in reachable:
                continue
            reachable.add(name)
            package = graph[name]
            children = list(package.dependencies) + list(package.optional_dependencies)
            if package.kind == PackageKind.ALIAS and package.real_name:
                children.append(package.real_name)
            queue.extend(child for child in children if child in graph and child not in reachable)
        for name in [n for n in graph if n not in reachable]:
            logger.debug("Dropping unreachable package %s", name)
            del graph.packages[name]

    @staticmethod
    def _check_peers(graph: DependencyGraph) -> List[PeerWarning]:
        warnings: List[PeerWarning] = []
        for name in sorted(graph):
            package = graph[name]
            for peer, required in sorted(package.peer_dependencies.items()):
                found = graph.get(peer)
                if found is None:
                    warnings.append(PeerWarning(name, package.version, peer, required))
                elif found.kind in (PackageKind.REGISTRY, PackageKind.ALIAS) and not semver.satisfies(
                    found.version, required
                ):
                    warnings.append(PeerWarning(name, package.version, peer, required, found.version))
        return warnings
