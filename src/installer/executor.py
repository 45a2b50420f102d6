"""Materialize a resolved graph into a module directory.

Registry packages come out of the content-addressable store and are copied or
symlinked into ``<dest>/node_modules/<name>``; local ``file:``/``link:``
packages are copied or linked from their source directory. Lifecycle scripts
run after placement. A failing script marks its package as skipped; an
integrity failure aborts the whole install.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from common.concurrency import run_bounded
from common.config import CoreConfig
from common.errors import ResolutionError
from common.fs_utils import acopy_tree, aread_json, aremove_path, link_or_copy
from common.logging_utils import Timer, extra_context
from constants import Constants
from registry.metadata_cache import MetadataCache
from resolution.models import DependencyGraph, PackageKind, ResolvedPackage
from store.cas import ArchiveMeta, ContentAddressableStore
from versioning.models import LocalProtocol, LocalSpec
from versioning.parser import parse_dependency_spec

from .lifecycle import LifecycleRunner, ScriptResult

logger = logging.getLogger(__name__)


class InstallOutcome(Enum):
    INSTALLED = "installed"
    SKIPPED = "skipped"


@dataclass
class InstallStats:
    """Aggregate result of ``install_tree``; ``total`` is the number of graph entries."""
    installed: int = 0
    skipped: int = 0
    total: int = 0
    symlinked: int = 0
    copied: int = 0
    script_failures: List[ScriptResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {"installed": self.installed, "skipped": self.skipped, "total": self.total}


def module_path(modules_dir: str, name: str) -> str:
    """``node_modules`` location of ``name``; scoped names nest under their scope."""
    return os.path.join(modules_dir, *name.split("/"))


class InstallExecutor:
    """Installs graphs through a ``ContentAddressableStore`` with bounded concurrency."""

    def __init__(
        self,
        store: ContentAddressableStore,
        metadata: Optional[MetadataCache] = None,
        config: Optional[CoreConfig] = None,
        lifecycle: Optional[LifecycleRunner] = None,
    ):
        self.store = store
        self.metadata = metadata
        self.config = config or CoreConfig()
        self.lifecycle = lifecycle or LifecycleRunner(
            self.config.script_env, binary_cache_dir=self.config.binary_cache_dir
        )

    async def install_tree(
        self,
        graph: DependencyGraph,
        dest_dir: str,
        use_symlinks: bool = False,
        project_dir: Optional[str] = None,
        offline: bool = False,
    ) -> InstallStats:
        """Install every entry of ``graph`` under ``dest_dir/node_modules``.

        Args:
            graph: Resolved dependency graph.
            dest_dir: Directory receiving ``node_modules``.
            use_symlinks: Symlink store entries instead of copying them.
            project_dir: Base for relative ``file:``/``link:`` paths (defaults to ``dest_dir``).
            offline: Look up missing archive locations in cached metadata only.

        Returns:
            InstallStats: ``installed + skipped == total == len(graph)``.

        Raises:
            IntegrityError: an archive failed verification.
            RegistryError, ArchiveError: an archive could not be fetched or unpacked.
        """
        modules_dir = os.path.join(dest_dir, Constants.MODULES_DIR)
        await asyncio.to_thread(os.makedirs, modules_dir, exist_ok=True)
        base_dir = project_dir or dest_dir
        stats = InstallStats(total=len(graph))
        packages = list(graph.packages.values())

        with Timer() as timer:
            archives = await run_bounded(
                packages, lambda pkg: self._archive_meta(pkg, offline), self.config.concurrency
            )
            jobs: List[Tuple[ResolvedPackage, Optional[ArchiveMeta]]] = list(zip(packages, archives))

            async def _worker(job: Tuple[ResolvedPackage, Optional[ArchiveMeta]]) -> InstallOutcome:
                package, archive = job
                return await self._install_one(package, archive, modules_dir, base_dir, use_symlinks, stats)

            outcomes = await run_bounded(jobs, _worker, self.config.concurrency)

        stats.installed = sum(1 for o in outcomes if o == InstallOutcome.INSTALLED)
        stats.skipped = sum(1 for o in outcomes if o == InstallOutcome.SKIPPED)
        logger.info(
            "Installed %d packages (%d skipped, %d total)",
            stats.installed,
            stats.skipped,
            stats.total,
            extra=extra_context(
                event="install",
                component="installer",
                outcome="success",
                count=stats.total,
                duration_ms=timer.duration_ms(),
            ),
        )
        if stats.copied and use_symlinks:
            logger.warning("Copied %d packages because symlinks could not be created", stats.copied)
        return stats

    async def _archive_meta(self, package: ResolvedPackage, offline: bool) -> Optional[ArchiveMeta]:
        """Archive location for a registry, alias or remote entry; None for local ones."""
        if package.kind == PackageKind.LOCAL:
            return None
        if package.kind == PackageKind.REMOTE:
            return ArchiveMeta(url=package.tarball_url) if package.tarball_url else None
        if package.tarball_url:
            return ArchiveMeta(package.tarball_url, package.integrity, package.shasum)
        if self.metadata is None:
            raise ResolutionError(f"No archive URL recorded for {package.name}@{package.version}")
        manifest = await self.metadata.version_manifest(package.registry_name, package.version, offline=offline)
        dist = manifest.get("dist") or {}
        return ArchiveMeta(dist.get("tarball"), dist.get("integrity"), dist.get("shasum"))

    async def _install_one(  # pylint: disable=too-many-arguments
        self,
        package: ResolvedPackage,
        archive: Optional[ArchiveMeta],
        modules_dir: str,
        base_dir: str,
        use_symlinks: bool,
        stats: InstallStats,
    ) -> InstallOutcome:
        target = module_path(modules_dir, package.name)

        if package.kind == PackageKind.LOCAL:
            await self._install_local(package, target, base_dir, stats)
            return InstallOutcome.INSTALLED

        if archive is None or not archive.url:
            message = f"Skipping {package.name}: cannot fetch {package.version} (only HTTPS archives are supported)"
            logger.warning(message)
            stats.warnings.append(message)
            return InstallOutcome.SKIPPED

        store_name = package.registry_name if package.kind != PackageKind.REMOTE else package.name
        store_path = await self.store.ensure_in_store(store_name, package.version, archive)

        installed = await aread_json(os.path.join(target, Constants.PACKAGE_JSON_FILE))
        if isinstance(installed, dict) and installed.get("version") == package.version:
            logger.debug("%s@%s already up to date", package.name, package.version)
            return InstallOutcome.SKIPPED

        await aremove_path(target)
        if use_symlinks:
            how = await link_or_copy(store_path, target)
            if how == "symlink":
                stats.symlinked += 1
            else:
                logger.warning(
                    "Symlink failed for %s@%s; falling back to copy", package.name, package.version
                )
                stats.copied += 1
        else:
            await acopy_tree(store_path, target)
            stats.copied += 1

        manifest = await aread_json(os.path.join(target, Constants.PACKAGE_JSON_FILE))
        results = await self.lifecycle.run_all(package.name, target, manifest if isinstance(manifest, dict) else {})
        failures = [r for r in results if not r.ok]
        if failures:
            stats.script_failures.extend(failures)
            return InstallOutcome.SKIPPED
        return InstallOutcome.INSTALLED

    @staticmethod
    async def _install_local(package: ResolvedPackage, target: str, base_dir: str, stats: InstallStats) -> None:
        spec = parse_dependency_spec(package.version)
        if not isinstance(spec, LocalSpec):
            raise ValueError(f"{package.name} is not a local dependency: {package.version}")
        source = os.path.abspath(os.path.join(base_dir, os.path.expanduser(spec.path)))
        await aremove_path(target)
        if spec.protocol == LocalProtocol.LINK:
            how = await link_or_copy(source, target)
            logger.info("%s local dependency %s from %s", "Symlinked" if how == "symlink" else "Copied", package.name, source)
            if how == "symlink":
                stats.symlinked += 1
            else:
                stats.copied += 1
        else:
            await acopy_tree(source, target)
            logger.info("Copied local dependency %s from %s", package.name, source)
            stats.copied += 1
