"""Warm the metadata and archive caches so a later install can run offline."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from common.concurrency import run_bounded
from common.config import CoreConfig
from registry.metadata_cache import MetadataCache
from resolution.models import DependencyGraph, PackageKind, ResolvedPackage

from .cas import ContentAddressableStore

logger = logging.getLogger(__name__)


@dataclass
class PrefetchStats:
    packages: int = 0
    archives_downloaded: int = 0
    skipped: int = 0


async def prefetch_graph(
    graph: DependencyGraph,
    metadata: MetadataCache,
    store: ContentAddressableStore,
    config: Optional[CoreConfig] = None,
) -> PrefetchStats:
    """Cache metadata and archives for every registry package in ``graph``.

    Local and remote entries are skipped. Failures propagate.

    Returns:
        PrefetchStats: Counts of packages visited and archives newly downloaded.
    """
    config = config or CoreConfig()
    stats = PrefetchStats()

    async def _one(package: ResolvedPackage) -> None:
        if package.kind not in (PackageKind.REGISTRY, PackageKind.ALIAS):
            stats.skipped += 1
            return
        url = package.tarball_url
        if not url:
            manifest = await metadata.version_manifest(package.registry_name, package.version)
            url = (manifest.get("dist") or {}).get("tarball")
        else:
            await metadata.get(package.registry_name)
        stats.packages += 1
        if not url:
            logger.warning("No archive URL for %s@%s", package.name, package.version)
            return
        already = store.cache_path_for(url)
        existed = os.path.isfile(already)
        await store.ensure_cached(url)
        if not existed:
            stats.archives_downloaded += 1

    await run_bounded(list(graph.packages.values()), _one, config.concurrency)
    logger.info(
        "Prefetch complete. %d packages metadata and %d archives cached.",
        stats.packages,
        stats.archives_downloaded,
    )
    return stats
