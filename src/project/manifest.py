"""Project ``package.json`` access and lockfile staleness checks."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from common.errors import ManifestError
from constants import Constants
from versioning import semver
from versioning.models import AliasSpec, LocalSpec, RegistrySpec, ResolutionMode
from versioning.parser import parse_dependency_spec

logger = logging.getLogger(__name__)


@dataclass
class ProjectManifest:
    """A parsed project ``package.json``."""
    path: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def project_dir(self) -> str:
        return os.path.dirname(self.path)

    @property
    def name(self) -> str:
        return str(self.data.get("name") or "")

    @property
    def dependencies(self) -> Dict[str, str]:
        return _string_map(self.data.get("dependencies"))

    @property
    def dev_dependencies(self) -> Dict[str, str]:
        return _string_map(self.data.get("devDependencies"))

    def install_dependencies(self, production: bool = False) -> Dict[str, str]:
        """Dependencies to install: ``dependencies`` only in production, else plus ``devDependencies``."""
        if production:
            return self.dependencies
        merged = self.dependencies
        merged.update(self.dev_dependencies)
        return merged

    def workspace_patterns(self) -> List[str]:
        """Workspace globs from either ``workspaces: [...]`` or ``workspaces: {packages: [...]}``."""
        workspaces = self.data.get("workspaces")
        if isinstance(workspaces, dict):
            workspaces = workspaces.get("packages")
        if not isinstance(workspaces, list):
            return []
        return [str(p) for p in workspaces if p]


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


def read_manifest(project_dir: str) -> ProjectManifest:
    """Read ``package.json`` from ``project_dir``.

    Raises:
        ManifestError: the file is missing, unreadable or not a JSON object.
    """
    path = os.path.join(os.path.abspath(project_dir), Constants.PACKAGE_JSON_FILE)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ManifestError(
            f"No {Constants.PACKAGE_JSON_FILE} found in {project_dir}. "
            "Create one with a \"dependencies\" section before installing."
        ) from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Could not read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ManifestError(f"{path} must contain a JSON object")
    return ProjectManifest(path=path, data=data)


def has_local_dependencies(dependencies: Mapping[str, str]) -> bool:
    """True when any spec uses the ``file:`` or ``link:`` protocol."""
    return any(isinstance(parse_dependency_spec(v), LocalSpec) for v in dependencies.values())


def _locked_version(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("version") or "")
    return str(entry or "")


def _entry_satisfies(entry: Any, raw: str) -> bool:
    locked = _locked_version(entry)
    if not locked:
        return False
    spec = parse_dependency_spec(raw)
    if isinstance(spec, AliasSpec):
        real_name = entry.get("realName") if isinstance(entry, dict) else None
        return real_name == spec.real_name and (
            spec.real_range in ("", "latest") or semver.satisfies(locked, spec.real_range)
        )
    if isinstance(spec, RegistrySpec):
        if spec.mode in (ResolutionMode.LATEST, ResolutionMode.TAG):
            return True
        return semver.satisfies(locked, spec.range)
    return locked == spec.raw


def deps_changed(requested: Mapping[str, str], lock_packages: Mapping[str, Any]) -> bool:
    """Whether the lockfile no longer matches the requested top-level dependencies.

    Stale when a requested name is missing from the lock, its locked version
    does not satisfy the requested spec, or the lock holds a top-level entry
    that is no longer requested. Entries recorded with a parent are
    transitive and only need to exist.
    """
    for name, raw in requested.items():
        entry = lock_packages.get(name)
        if entry is None or not _entry_satisfies(entry, raw):
            logger.debug("Lockfile is stale for %s (%s)", name, raw)
            return True
    aliased = {
        entry.get("realName") for entry in lock_packages.values() if isinstance(entry, dict)
    }
    for name, entry in lock_packages.items():
        transitive = isinstance(entry, dict) and entry.get("parent")
        if not transitive and name not in requested and name not in aliased:
            logger.debug("Lockfile has %s but it is no longer requested", name)
            return True
    return False
