"""Tests for the registry client and the metadata cache."""

import asyncio
import json
import os

import pytest

from common.errors import OfflineError, RegistryError, ResolutionError
from constants import Constants
from registry.client import NpmRegistryClient, package_url
from registry.metadata_cache import MetadataCache


class _FakeResponse:
    def __init__(self, status, payload=None, body=b""):
        self.status = status
        self._payload = payload
        self._body = body

    async def json(self, content_type=None):
        return self._payload

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class _FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def get(self, url, headers=None):
        self.requests.append((url, headers))
        return self.responses[url]

    async def close(self):
        pass


class TestPackageUrl:
    def test_plain_name(self):
        assert package_url("https://registry.test/", "lodash") == "https://registry.test/lodash"

    def test_scoped_name_escapes_slash(self):
        assert package_url("https://registry.test", "@babel/core") == "https://registry.test/@babel%2fcore"


class TestNpmRegistryClient:
    """Request construction and status handling, with the HTTP session replaced."""

    def test_metadata_sends_install_accept_header(self):
        client = NpmRegistryClient("https://registry.test/")
        session = _FakeSession(
            {"https://registry.test/lodash": _FakeResponse(200, {"name": "lodash", "versions": {}})}
        )
        client._session = session

        data = asyncio.run(client.get_package_metadata("lodash"))

        assert data["name"] == "lodash"
        url, headers = session.requests[0]
        assert url == "https://registry.test/lodash"
        assert headers["Accept"] == Constants.NPM_INSTALL_ACCEPT

    def test_non_200_raises_registry_error(self):
        client = NpmRegistryClient("https://registry.test/")
        client._session = _FakeSession({"https://registry.test/missing": _FakeResponse(404)})

        with pytest.raises(RegistryError) as excinfo:
            asyncio.run(client.get_package_metadata("missing"))
        assert excinfo.value.status == 404

    def test_download_archive_returns_bytes(self):
        client = NpmRegistryClient("https://registry.test/")
        url = "https://registry.test/a/-/a-1.0.0.tgz"
        client._session = _FakeSession({url: _FakeResponse(200, body=b"tgz-bytes")})

        assert asyncio.run(client.download_archive(url)) == b"tgz-bytes"


class TestMetadataCache:
    """Cache-first lookups with offline fail-fast."""

    def test_fetch_writes_through(self, registry, tmp_path):
        registry.publish("left-pad", "1.0.0")
        cache = MetadataCache(registry, str(tmp_path))

        meta = asyncio.run(cache.get("left-pad"))

        assert "1.0.0" in meta["versions"]
        with open(cache.path_for("left-pad"), encoding="utf-8") as fh:
            assert json.load(fh)["name"] == "left-pad"

    def test_second_instance_uses_disk_cache(self, registry, tmp_path):
        registry.publish("left-pad", "1.0.0")
        asyncio.run(MetadataCache(registry, str(tmp_path)).get("left-pad"))

        asyncio.run(MetadataCache(registry, str(tmp_path)).get("left-pad"))

        assert registry.metadata_calls["left-pad"] == 1

    def test_concurrent_lookups_share_one_fetch(self, registry, tmp_path):
        registry.publish("left-pad", "1.0.0")
        cache = MetadataCache(registry, str(tmp_path))

        async def main():
            return await asyncio.gather(*(cache.get("left-pad") for _ in range(5)))

        results = asyncio.run(main())
        assert len(results) == 5
        assert registry.metadata_calls["left-pad"] == 1

    def test_offline_miss_raises(self, registry, tmp_path):
        registry.publish("left-pad", "1.0.0")
        cache = MetadataCache(registry, str(tmp_path))

        with pytest.raises(OfflineError, match="not available offline"):
            asyncio.run(cache.get("left-pad", offline=True))
        assert "left-pad" not in registry.metadata_calls

    def test_scoped_name_cache_file(self, tmp_path):
        cache = MetadataCache(None, str(tmp_path))
        assert os.path.basename(cache.path_for("@scope/pkg")) == "metadata-@scope_pkg.json"

    def test_failed_fetch_is_not_memoized(self, registry, tmp_path):
        cache = MetadataCache(registry, str(tmp_path))

        async def main():
            with pytest.raises(RegistryError):
                await cache.get("later")
            registry.publish("later", "1.0.0")
            return await cache.get("later")

        assert "1.0.0" in asyncio.run(main())["versions"]

    def test_version_manifest_missing_version(self, registry, tmp_path):
        registry.publish("left-pad", "1.0.0")
        cache = MetadataCache(registry, str(tmp_path))

        with pytest.raises(ResolutionError):
            asyncio.run(cache.version_manifest("left-pad", "9.9.9"))
