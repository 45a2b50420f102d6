"""Content-addressable package store.

Layout:

* ``<store_dir>/<sanitized-name>/<version>/`` holds an extracted package; its
  ``package.json`` is the proof that extraction finished.
* ``<cache_dir>/<sha256(url)>.tgz`` holds downloaded archives, keyed by the
  URL they came from.

Writers for the same key serialize on a ``.lock`` sidecar, so concurrent
installs (in one process or several) never extract over each other.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from common.config import CoreConfig
from common.errors import IntegrityError, RegistryError
from common.fs_utils import remove_path, sanitize_name, sanitize_segment
from common.locking import key_lock
from common.logging_utils import Timer, extra_context, safe_url
from constants import Constants
from registry.client import RegistryClient

from .archive import extract_archive
from .integrity import verify_archive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveMeta:
    """Where an archive lives and what it should hash to."""
    url: str
    integrity: Optional[str] = None
    shasum: Optional[str] = None


class ContentAddressableStore:
    """Download, verify and extract archives exactly once per package version."""

    def __init__(
        self,
        store_dir: str,
        cache_dir: str,
        client: Optional[RegistryClient] = None,
        lock_timeout: float = Constants.LOCK_TIMEOUT_SEC,
    ):
        self.store_dir = store_dir
        self.cache_dir = cache_dir
        self.client = client
        self.lock_timeout = lock_timeout

    @classmethod
    def from_config(cls, config: CoreConfig, client: Optional[RegistryClient] = None) -> "ContentAddressableStore":
        return cls(config.store_dir, config.cache_dir, client, config.lock_timeout)

    def store_path(self, name: str, version: str) -> str:
        return os.path.join(self.store_dir, sanitize_name(name), sanitize_segment(version))

    def cache_path_for(self, url: str) -> str:
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
        return os.path.join(self.cache_dir, digest + Constants.DEFAULT_ARCHIVE_EXT)

    def is_in_store(self, name: str, version: str) -> bool:
        return os.path.isfile(os.path.join(self.store_path(name, version), Constants.PACKAGE_JSON_FILE))

    async def ensure_cached(self, url: str) -> str:
        """Return the cached archive for ``url``, downloading it on a miss.

        Raises:
            RegistryError: the download failed or no client is configured.
        """
        cache_path = self.cache_path_for(url)
        if os.path.isfile(cache_path):
            logger.debug("Using cached archive %s", cache_path)
            return cache_path
        async with key_lock(cache_path + ".lock", timeout=self.lock_timeout):
            if os.path.isfile(cache_path):
                return cache_path
            if self.client is None:
                raise RegistryError(f"Archive not cached and no registry client: {safe_url(url)}")
            with Timer() as timer:
                await self.client.download_to_file(url, cache_path)
            logger.info(
                "Cached archive %s",
                safe_url(url),
                extra=extra_context(
                    event="cache_store",
                    component="store",
                    target=safe_url(url),
                    duration_ms=timer.duration_ms(),
                ),
            )
        return cache_path

    async def ensure_in_store(self, name: str, version: str, archive: ArchiveMeta) -> str:
        """Make ``name@version`` available in the store and return its path.

        Args:
            name: Package name.
            version: Resolved version (or locator for remote archives).
            archive: Archive URL plus optional ``integrity`` / ``shasum``.

        Returns:
            str: The store path containing the extracted package.

        Raises:
            IntegrityError: a declared digest does not match. The cached
                archive is discarded and nothing is placed in the store.
            ArchiveError: the archive is corrupt or unsafe.
            RegistryError: the archive could not be downloaded.
        """
        store_path = self.store_path(name, version)
        label = f"{name}@{version}"
        if self.is_in_store(name, version):
            return store_path

        async with key_lock(store_path + ".lock", timeout=self.lock_timeout):
            if self.is_in_store(name, version):
                return store_path
            cache_path = await self.ensure_cached(archive.url)
            try:
                await asyncio.to_thread(
                    verify_archive, cache_path, archive.integrity, archive.shasum, label
                )
            except IntegrityError:
                logger.error(
                    "Integrity verification failed for %s; discarding cached archive",
                    label,
                    extra=extra_context(
                        event="integrity_check", component="store", outcome="failure", package=label
                    ),
                )
                await asyncio.to_thread(remove_path, cache_path)
                raise
            await asyncio.to_thread(self._extract_into, cache_path, store_path)

        logger.debug(
            "Extracted %s into store",
            label,
            extra=extra_context(event="store_extract", component="store", package=label, target=store_path),
        )
        return store_path

    @staticmethod
    def _extract_into(cache_path: str, store_path: str) -> None:
        """Extract beside ``store_path`` then rename, so a partial extraction is never visible."""
        parent = os.path.dirname(store_path)
        os.makedirs(parent, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=".extract-", dir=parent)
        try:
            extract_archive(cache_path, staging, strip=1)
            remove_path(store_path)
            os.replace(staging, store_path)
        finally:
            if os.path.exists(staging):
                remove_path(staging)
