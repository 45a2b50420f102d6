"""On-disk cache of registry packuments.

Each package's last-fetched metadata lives at
``<cache_dir>/metadata-<sanitized-name>.json``. Lookups are cache-first;
misses go to the registry client and are written through. Concurrent
lookups for the same name within one cache instance share a single fetch.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Optional

from common.errors import OfflineError, ResolutionError
from common.fs_utils import aread_json, sanitize_name, write_json_atomic
from common.logging_utils import extra_context
from constants import Constants

from .client import RegistryClient

logger = logging.getLogger(__name__)


class MetadataCache:
    """Cache-first packument lookups backed by a ``RegistryClient``."""

    def __init__(self, client: Optional[RegistryClient], cache_dir: str):
        self.client = client
        self.cache_dir = cache_dir
        self._pending: Dict[str, "asyncio.Future[Dict[str, Any]]"] = {}

    def path_for(self, name: str) -> str:
        return os.path.join(
            self.cache_dir, f"{Constants.METADATA_CACHE_PREFIX}{sanitize_name(name)}.json"
        )

    async def get(self, name: str, offline: bool = False) -> Dict[str, Any]:
        """Return metadata for ``name``.

        Args:
            name: Package name.
            offline: Read the cache only; raise instead of fetching.

        Returns:
            dict: The packument.

        Raises:
            OfflineError: offline and nothing cached for ``name``.
            RegistryError: the registry fetch failed.
        """
        key = f"{name}\0{offline}"
        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load(name, offline))
            self._pending[key] = pending
        try:
            return await asyncio.shield(pending)
        except BaseException:
            # failed lookups are not memoized
            if pending.done() and self._pending.get(key) is pending:
                del self._pending[key]
            raise

    async def _load(self, name: str, offline: bool) -> Dict[str, Any]:
        path = self.path_for(name)
        cached = await aread_json(path)
        if isinstance(cached, dict):
            logger.debug(
                "Metadata cache hit",
                extra=extra_context(event="cache_hit", component="metadata_cache", package=name),
            )
            return cached
        if offline:
            raise OfflineError(f"Metadata for {name} is not available offline (expected {path})")
        if self.client is None:
            raise OfflineError(f"Metadata for {name} is not available offline: no registry client")
        data = await self.client.get_package_metadata(name)
        try:
            await asyncio.to_thread(write_json_atomic, path, data)
        except OSError as exc:
            logger.warning("Could not cache metadata for %s: %s", name, exc)
        return data

    async def version_manifest(self, name: str, version: str, offline: bool = False) -> Dict[str, Any]:
        """Return the per-version manifest for ``name@version``.

        Raises:
            ResolutionError: the version is not published.
        """
        meta = await self.get(name, offline=offline)
        manifest = (meta.get("versions") or {}).get(version)
        if not isinstance(manifest, dict):
            raise ResolutionError(f"Version {version} of {name} not found in registry metadata")
        return manifest
