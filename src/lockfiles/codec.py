"""Lockfile reading and writing.

Current schema::

    {
      "version": "2.0.0",
      "generated": "<ISO-8601>",
      "integrity": "<sha256 hex of the serialized packages map>",
      "packages": {"<name>": {"version": ..., "dependencies": {...}, ...}},
      "metadata": {"totalPackages": N, "platform": ..., "arch": ...}
    }

Older lockfiles are a bare ``name -> entry`` map and are returned unchanged.
The integrity value is a staleness signal only: a mismatch is logged, never
fatal.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import platform as py_platform
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from common.config import CoreConfig
from common.errors import LockfileError
from common.fs_utils import write_json_atomic
from constants import Constants
from resolution.models import DependencyGraph, PackageKind, ResolvedPackage
from resolution.platform import current_platform
from versioning.models import LocalSpec, RemoteSpec
from versioning.parser import parse_dependency_spec

logger = logging.getLogger(__name__)


def compute_integrity(packages: Mapping[str, Any]) -> str:
    """sha256 hex digest of the packages map serialized with two-space indentation."""
    content = json.dumps(packages, indent=2, ensure_ascii=False)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class LockfileDocument:
    """A parsed lockfile, current or legacy."""
    packages: Dict[str, Any]
    schema_version: Optional[str] = None
    generated: Optional[str] = None
    integrity: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    legacy: bool = False
    integrity_ok: Optional[bool] = None


class LockfileCodec:
    """Reads and writes ``blaze-lock.json`` at a fixed path."""

    def __init__(self, path: str):
        self.path = path

    @classmethod
    def for_project(cls, project_dir: str, config: Optional[CoreConfig] = None) -> "LockfileCodec":
        config = config or CoreConfig()
        return cls(os.path.join(project_dir, config.lockfile_name))

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    @staticmethod
    def serialize_package(package: ResolvedPackage, installed_at: str) -> Dict[str, Any]:
        info = current_platform()
        entry: Dict[str, Any] = {
            "version": package.version,
            "dependencies": dict(package.dependencies),
            "peerDependencies": dict(package.peer_dependencies),
            "optionalDependencies": dict(package.optional_dependencies),
            "integrity": package.integrity,
            "shasum": package.shasum,
            "tarballUrl": package.tarball_url,
            "parent": package.parent,
            "resolved": package.resolved,
            "kind": package.kind.value,
        }
        if package.real_name:
            entry["realName"] = package.real_name
        entry["metadata"] = {
            "installed": installed_at,
            "platform": info.platform,
            "arch": info.arch,
        }
        return entry

    def build_document(self, graph: DependencyGraph) -> Dict[str, Any]:
        """Current-schema document for ``graph`` (not written)."""
        generated = _now()
        packages = {
            name: self.serialize_package(graph[name], generated) for name in sorted(graph)
        }
        info = current_platform()
        return {
            "version": Constants.LOCKFILE_SCHEMA_VERSION,
            "generated": generated,
            "integrity": compute_integrity(packages),
            "packages": packages,
            "metadata": {
                "totalPackages": len(packages),
                "platform": info.platform,
                "arch": info.arch,
                "pythonVersion": py_platform.python_version(),
                "generator": Constants.USER_AGENT,
            },
        }

    def write(self, graph: DependencyGraph) -> Dict[str, Any]:
        """Rewrite the whole lockfile for ``graph``; the file is replaced atomically.

        Returns:
            dict: The document that was written.
        """
        document = self.build_document(graph)
        write_json_atomic(self.path, document, indent=2)
        logger.debug("Wrote lockfile %s (%d packages)", self.path, len(document["packages"]))
        return document

    async def awrite(self, graph: DependencyGraph) -> Dict[str, Any]:
        return await asyncio.to_thread(self.write, graph)

    def read_document(self) -> Optional[LockfileDocument]:
        """Parse the lockfile.

        Returns:
            LockfileDocument or None when the file does not exist.

        Raises:
            LockfileError: the file is not valid JSON or not an object.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                text = fh.read()
        except FileNotFoundError:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LockfileError(f"Lockfile {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise LockfileError(f"Lockfile {self.path} is not a JSON object")

        if "version" in data and isinstance(data.get("packages"), dict):
            document = LockfileDocument(
                packages=data["packages"],
                schema_version=str(data["version"]),
                generated=data.get("generated"),
                integrity=data.get("integrity"),
                metadata=data.get("metadata") or {},
            )
            if document.integrity:
                document.integrity_ok = compute_integrity(document.packages) == document.integrity
                if not document.integrity_ok:
                    logger.warning(
                        "Lockfile integrity check failed. The lockfile may be corrupted or hand-edited: %s",
                        self.path,
                    )
            return document
        return LockfileDocument(packages=data, legacy=True)

    def read(self, raw: bool = False) -> Union[None, str, Dict[str, Any]]:
        """Read the lockfile.

        Args:
            raw: Return the file text without parsing.

        Returns:
            None if missing; the text when ``raw``; otherwise the ``packages``
            map of a current lockfile or the whole legacy map.
        """
        if raw:
            try:
                with open(self.path, "r", encoding="utf-8") as fh:
                    return fh.read()
            except FileNotFoundError:
                return None
        document = self.read_document()
        if document is None:
            return None
        return document.packages

    @staticmethod
    def to_graph(packages: Mapping[str, Any]) -> DependencyGraph:
        """Rebuild a ``DependencyGraph`` from a current or legacy packages map.

        Legacy entries may be a bare version string or a partial entry.
        """
        graph = DependencyGraph()
        for name, entry in packages.items():
            if isinstance(entry, str):
                entry = {"version": entry}
            if not isinstance(entry, dict) or not entry.get("version"):
                logger.warning("Ignoring malformed lockfile entry for %s", name)
                continue
            version = str(entry["version"])
            graph.add(
                ResolvedPackage(
                    name=name,
                    version=version,
                    kind=_kind_of(entry.get("kind"), version),
                    dependencies=dict(entry.get("dependencies") or {}),
                    peer_dependencies=dict(entry.get("peerDependencies") or {}),
                    optional_dependencies=dict(entry.get("optionalDependencies") or {}),
                    integrity=entry.get("integrity"),
                    shasum=entry.get("shasum"),
                    tarball_url=entry.get("tarballUrl") or _archive_url(version),
                    parent=entry.get("parent"),
                    real_name=entry.get("realName"),
                    resolved=entry.get("resolved"),
                )
            )
        return graph


def _archive_url(version: str) -> Optional[str]:
    spec = parse_dependency_spec(version)
    return spec.archive_url if isinstance(spec, RemoteSpec) else None


def _kind_of(recorded: Optional[str], version: str) -> PackageKind:
    if recorded:
        try:
            return PackageKind(recorded)
        except ValueError:
            logger.debug("Unknown package kind %r in lockfile", recorded)
    spec = parse_dependency_spec(version)
    if isinstance(spec, LocalSpec):
        return PackageKind.LOCAL
    if isinstance(spec, RemoteSpec):
        return PackageKind.REMOTE
    return PackageKind.REGISTRY
