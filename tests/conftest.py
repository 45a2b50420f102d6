"""Shared fixtures: an in-memory registry and a tarball builder."""

import io
import json
import tarfile
from typing import Dict, Optional, Union

import pytest

from common.config import CoreConfig
from common.errors import RegistryError
from registry.client import RegistryClient
from store.integrity import compute_integrity
from versioning import semver

REGISTRY_URL = "https://registry.test/"


def build_tarball(files: Dict[str, Union[str, bytes]], root: str = "package") -> bytes:
    """Gzipped tarball with every file under ``root/``, the way npm packs."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for rel, content in sorted(files.items()):
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=f"{root}/{rel}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeRegistry(RegistryClient):
    """Serves packuments and archives from dictionaries and counts requests."""

    def __init__(self):
        self.packuments: Dict[str, dict] = {}
        self.archives: Dict[str, bytes] = {}
        self.metadata_calls: Dict[str, int] = {}
        self.downloads: Dict[str, int] = {}

    def publish(
        self,
        name: str,
        version: str,
        dependencies: Optional[dict] = None,
        peer_dependencies: Optional[dict] = None,
        optional_dependencies: Optional[dict] = None,
        scripts: Optional[dict] = None,
        files: Optional[dict] = None,
        integrity: bool = True,
    ) -> dict:
        manifest = {"name": name, "version": version}
        if dependencies:
            manifest["dependencies"] = dependencies
        if peer_dependencies:
            manifest["peerDependencies"] = peer_dependencies
        if optional_dependencies:
            manifest["optionalDependencies"] = optional_dependencies
        if scripts:
            manifest["scripts"] = scripts
        contents = {"package.json": json.dumps(manifest), "index.js": f"module.exports = '{version}';\n"}
        contents.update(files or {})
        data = build_tarball(contents)

        bare = name.split("/")[-1]
        url = f"{REGISTRY_URL}{name}/-/{bare}-{version}.tgz"
        self.archives[url] = data
        dist = {"tarball": url}
        if integrity:
            dist["integrity"] = compute_integrity(data)
        entry = dict(manifest, dist=dist)

        packument = self.packuments.setdefault(name, {"name": name, "dist-tags": {}, "versions": {}})
        packument["versions"][version] = entry
        packument["dist-tags"]["latest"] = semver.highest_version(packument["versions"])
        return entry

    async def get_package_metadata(self, name: str) -> dict:
        self.metadata_calls[name] = self.metadata_calls.get(name, 0) + 1
        if name not in self.packuments:
            raise RegistryError(f"Registry returned 404 for {name}", status=404)
        return json.loads(json.dumps(self.packuments[name]))

    async def download_archive(self, url: str) -> bytes:
        self.downloads[url] = self.downloads.get(url, 0) + 1
        if url not in self.archives:
            raise RegistryError(f"Registry returned 404 for {url}", status=404)
        return self.archives[url]


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def config(tmp_path):
    return CoreConfig(
        registry_url=REGISTRY_URL,
        store_dir=str(tmp_path / "store"),
        cache_dir=str(tmp_path / "cache"),
        concurrency=4,
        lock_timeout=5.0,
    )


@pytest.fixture
def tarball():
    return build_tarball
