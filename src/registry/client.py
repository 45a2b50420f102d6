"""Registry client interface and the aiohttp-backed npm registry client."""

from __future__ import annotations

import abc
import logging
import os
import tempfile
import urllib.parse
from typing import Any, Dict, Optional

import aiohttp

from common.errors import RegistryError
from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from constants import Constants

logger = logging.getLogger(__name__)


class RegistryClient(abc.ABC):
    """What the core needs from a package registry.

    Retry and mirror failover belong to implementations, not to callers.
    """

    @abc.abstractmethod
    async def get_package_metadata(self, name: str) -> Dict[str, Any]:
        """Return the packument: ``{"dist-tags": {...}, "versions": {...}}``."""

    @abc.abstractmethod
    async def download_archive(self, url: str) -> bytes:
        """Return the raw bytes of the archive at ``url``."""

    async def download_to_file(self, url: str, dest_path: str) -> None:
        """Write the archive at ``url`` to ``dest_path``.

        The default buffers the whole archive; streaming clients override it.
        """
        data = await self.download_archive(url)
        _write_bytes_atomic(dest_path, data)

    async def close(self) -> None:
        """Release network resources; a no-op unless overridden."""


def _write_bytes_atomic(dest_path: str, data: bytes) -> None:
    directory = os.path.dirname(os.path.abspath(dest_path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".download-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, dest_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def package_url(registry_base: str, name: str) -> str:
    """Registry URL of a packument; scoped names keep ``@`` and escape the slash."""
    if name.startswith("@") and "/" in name:
        scope, bare = name.split("/", 1)
        escaped = f"{scope}%2f{urllib.parse.quote(bare, safe='')}"
    else:
        escaped = urllib.parse.quote(name, safe="")
    return registry_base.rstrip("/") + "/" + escaped


class NpmRegistryClient(RegistryClient):
    """npm registry client over one shared ``aiohttp.ClientSession``."""

    def __init__(
        self,
        registry_url: str = Constants.REGISTRY_URL_NPM,
        timeout: int = Constants.REQUEST_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ):
        """Initialize the client.

        Args:
            registry_url: Registry base URL.
            timeout: Total request timeout in seconds.
            headers: Extra headers sent with every request (e.g. authorization).
        """
        self._registry_url = registry_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._headers = {"User-Agent": Constants.USER_AGENT}
        if headers:
            self._headers.update(headers)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def registry_url(self) -> str:
        return self._registry_url

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=Constants.MAX_CONCURRENCY * 4)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
                headers=self._headers,
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def close(self) -> None:
        await self.stop()

    async def __aenter__(self) -> "NpmRegistryClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            await self.start()
        assert self._session is not None
        return self._session

    async def get_package_metadata(self, name: str) -> Dict[str, Any]:
        url = package_url(self._registry_url, name)
        session = await self._ensure_session()
        with Timer() as timer:
            try:
                async with session.get(url, headers={"Accept": Constants.NPM_INSTALL_ACCEPT}) as resp:
                    if resp.status != 200:
                        raise RegistryError(
                            f"Registry returned HTTP {resp.status} for {name}", status=resp.status
                        )
                    data = await resp.json(content_type=None)
            except aiohttp.ClientError as exc:
                raise RegistryError(f"Failed to fetch metadata for {name}: {exc}") from exc
        if is_debug_enabled(logger):
            logger.debug(
                "Fetched registry metadata",
                extra=extra_context(
                    event="http_response",
                    component="registry",
                    action="get_metadata",
                    target=safe_url(url),
                    package=name,
                    duration_ms=timer.duration_ms(),
                ),
            )
        if not isinstance(data, dict):
            raise RegistryError(f"Malformed metadata for {name}")
        return data

    async def download_archive(self, url: str) -> bytes:
        session = await self._ensure_session()
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise RegistryError(
                        f"Download failed with HTTP {resp.status}: {safe_url(url)}", status=resp.status
                    )
                return await resp.read()
        except aiohttp.ClientError as exc:
            raise RegistryError(f"Download failed for {safe_url(url)}: {exc}") from exc

    async def download_to_file(self, url: str, dest_path: str) -> None:
        """Stream the archive into a temp file beside ``dest_path`` and rename it."""
        session = await self._ensure_session()
        directory = os.path.dirname(os.path.abspath(dest_path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".download-", dir=directory)
        try:
            with Timer() as timer, os.fdopen(fd, "wb") as fh:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise RegistryError(
                            f"Download failed with HTTP {resp.status}: {safe_url(url)}",
                            status=resp.status,
                        )
                    async for chunk in resp.content.iter_chunked(Constants.DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
            os.replace(tmp_path, dest_path)
        except aiohttp.ClientError as exc:
            raise RegistryError(f"Download failed for {safe_url(url)}: {exc}") from exc
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
        logger.debug(
            "Downloaded archive",
            extra=extra_context(
                event="download",
                component="registry",
                target=safe_url(url),
                duration_ms=timer.duration_ms(),
            ),
        )
