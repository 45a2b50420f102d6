"""End-to-end install of a project directory.

Order of work: optional clean of ``node_modules`` (CI mode), workspace
hoisting, lockfile read, staleness check, resolution (re-resolved once when
missing peers get auto-resolved), installation, per-workspace installation
of workspace-specific requests, and finally the lockfile write.

A fresh lockfile whose top-level entries still match the manifest is
installed directly without touching the resolver.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from common.config import CoreConfig
from common.fs_utils import aremove_path
from common.logging_utils import Timer, extra_context
from constants import Constants
from installer.executor import InstallExecutor, InstallStats
from lockfiles.codec import LockfileCodec
from registry.client import NpmRegistryClient, RegistryClient
from registry.metadata_cache import MetadataCache
from resolution.models import DependencyGraph, ResolutionResult
from resolution.peers import PeerDependencyResolver, PeerResolution
from resolution.resolver import DependencyResolver
from store.cas import ContentAddressableStore
from store.prefetch import PrefetchStats, prefetch_graph
from workspaces.resolver import WorkspaceResolution, WorkspaceResolver

from .manifest import ProjectManifest, deps_changed, has_local_dependencies, read_manifest

logger = logging.getLogger(__name__)


@dataclass
class InstallOptions:
    """Switches for ``InstallPipeline.install``."""
    production: bool = False
    use_symlinks: bool = False
    offline: bool = False
    no_lockfile: bool = False
    ci: bool = False
    auto_resolve_peers: bool = True


@dataclass
class InstallReport:
    """Everything an install produced; rendering is up to the caller."""
    stats: InstallStats = field(default_factory=InstallStats)
    resolution: Optional[ResolutionResult] = None
    workspace: Optional[WorkspaceResolution] = None
    peers: Optional[PeerResolution] = None
    workspace_stats: Dict[str, InstallStats] = field(default_factory=dict)
    from_lockfile: bool = False
    lockfile_written: bool = False
    duration_ms: int = 0


class InstallPipeline:
    """Wires config, registry, store, resolver and installer for one project."""

    def __init__(
        self,
        project_dir: str,
        config: Optional[CoreConfig] = None,
        client: Optional[RegistryClient] = None,
    ):
        """Initialize the pipeline.

        Args:
            project_dir: Directory holding ``package.json``.
            config: Runtime config; loaded for ``project_dir`` when omitted.
            client: Registry client; an ``NpmRegistryClient`` is created and
                owned by the pipeline when omitted.
        """
        self.project_dir = os.path.abspath(project_dir)
        self.config = config or CoreConfig.load(self.project_dir)
        self._owns_client = client is None
        self.client = client or NpmRegistryClient(self.config.registry_url, self.config.request_timeout)
        self.metadata = MetadataCache(self.client, self.config.cache_dir)
        self.store = ContentAddressableStore.from_config(self.config, self.client)
        self.resolver = DependencyResolver(self.metadata, self.config)
        self.executor = InstallExecutor(self.store, self.metadata, self.config)
        self.lockfile = LockfileCodec.for_project(self.project_dir, self.config)
        self._workspace_paths: Dict[str, str] = {}

    async def close(self) -> None:
        if self._owns_client:
            await self.client.close()

    async def __aenter__(self) -> "InstallPipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def requested_dependencies(
        self, manifest: ProjectManifest, production: bool
    ) -> Tuple[Dict[str, str], Optional[WorkspaceResolution]]:
        """Top-level dependency map and the workspace decision, if the project is a monorepo."""
        patterns = manifest.workspace_patterns()
        if not patterns:
            return manifest.install_dependencies(production), None
        logger.info("Detected workspaces: %s", ", ".join(patterns))
        workspaces = WorkspaceResolver(self.project_dir)
        workspaces.discover_workspaces(patterns)
        workspaces.build_dependency_graph()
        decision = workspaces.resolve_dependencies(manifest.dependencies, manifest.dev_dependencies)
        logger.debug(
            "Workspace resolution: %d hoisted, %d workspace-specific, %d conflicts",
            len(decision.hoisted),
            len(decision.workspace_specific),
            len(decision.conflicts),
        )
        self._workspace_paths = {ws.name: ws.path for ws in workspaces.workspaces.values()}
        return dict(decision.hoisted), decision

    async def resolve(
        self, requested: Dict[str, str], options: InstallOptions
    ) -> Tuple[ResolutionResult, Optional[PeerResolution]]:
        """Resolve ``requested``; missing peers are added and resolved once more when enabled.

        Returns:
            tuple: ``(ResolutionResult, PeerResolution or None)``.
        """
        result = await self.resolver.resolve(requested, offline=options.offline)
        if not options.auto_resolve_peers or options.offline:
            return result, None
        if not any(w.missing for w in result.peer_warnings):
            return result, None
        peers = await PeerDependencyResolver(self.metadata, options.offline).auto_resolve(
            result.peer_warnings, requested
        )
        if peers.changed:
            logger.info("Auto-resolving peer dependencies: %s", ", ".join(sorted(peers.added)))
            result = await self.resolver.resolve(peers.dependencies, offline=options.offline)
        return result, peers

    async def install(self, options: Optional[InstallOptions] = None) -> InstallReport:
        """Install the project's dependencies.

        Raises:
            ManifestError: ``package.json`` is missing or invalid.
            BlazeError: a fatal resolution, fetch or integrity failure.
        """
        options = options or InstallOptions()
        report = InstallReport()
        manifest = read_manifest(self.project_dir)

        with Timer() as timer:
            if options.ci:
                await aremove_path(os.path.join(self.project_dir, Constants.MODULES_DIR))
                logger.info("CI mode: removed existing %s", Constants.MODULES_DIR)

            requested, report.workspace = self.requested_dependencies(manifest, options.production)
            if not requested and not (report.workspace and report.workspace.workspace_specific):
                logger.info("No dependencies found in %s.", Constants.PACKAGE_JSON_FILE)
                return report

            graph = await self._locked_graph(requested, options)
            if graph is not None:
                report.from_lockfile = True
            else:
                report.resolution, report.peers = await self.resolve(requested, options)
                graph = report.resolution.graph

            report.stats = await self.executor.install_tree(
                graph,
                self.project_dir,
                use_symlinks=options.use_symlinks,
                project_dir=self.project_dir,
                offline=options.offline,
            )

            if report.workspace:
                await self._install_workspaces(report, options)

            if report.resolution is not None and not options.no_lockfile:
                await self.lockfile.awrite(report.resolution.graph)
                report.lockfile_written = True

        report.duration_ms = timer.duration_ms()
        logger.info(
            "Install finished: %d installed, %d skipped",
            report.stats.installed,
            report.stats.skipped,
            extra=extra_context(
                event="install",
                component="pipeline",
                outcome="success",
                target=self.project_dir,
                count=report.stats.total,
                duration_ms=report.duration_ms,
            ),
        )
        return report

    async def _locked_graph(
        self, requested: Dict[str, str], options: InstallOptions
    ) -> Optional[DependencyGraph]:
        """Graph from an up-to-date lockfile, or None when resolution is needed."""
        if options.no_lockfile or has_local_dependencies(requested):
            return None
        document = await asyncio.to_thread(self.lockfile.read_document)
        if document is None or not document.packages:
            return None
        if deps_changed(requested, document.packages):
            logger.info("Lockfile is out of date; resolving dependencies")
            return None
        logger.info("Installing from lockfile %s", self.lockfile.path)
        return LockfileCodec.to_graph(document.packages)

    async def _install_workspaces(self, report: InstallReport, options: InstallOptions) -> None:
        for ws_name, deps in sorted(report.workspace.workspace_specific.items()):
            path = self._workspace_paths.get(ws_name)
            if not path or not deps:
                continue
            logger.info("Installing %d workspace-specific dependencies for %s", len(deps), ws_name)
            result = await self.resolver.resolve(deps, offline=options.offline)
            report.workspace_stats[ws_name] = await self.executor.install_tree(
                result.graph,
                path,
                use_symlinks=options.use_symlinks,
                project_dir=path,
                offline=options.offline,
            )

    async def prefetch(self, production: bool = False) -> PrefetchStats:
        """Resolve the project's dependencies and warm the metadata and archive caches."""
        manifest = read_manifest(self.project_dir)
        requested, _ = self.requested_dependencies(manifest, production)
        result = await self.resolver.resolve(requested)
        return await prefetch_graph(result.graph, self.metadata, self.store, self.config)


async def install_project(
    project_dir: str,
    options: Optional[InstallOptions] = None,
    config: Optional[CoreConfig] = None,
    client: Optional[RegistryClient] = None,
) -> InstallReport:
    """Convenience wrapper: build a pipeline, install, close the client."""
    async with InstallPipeline(project_dir, config=config, client=client) as pipeline:
        return await pipeline.install(options)
