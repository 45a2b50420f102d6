"""Monorepo workspace discovery and hoisting decisions.

Workspaces are found by expanding glob patterns under the repository root.
Every dependency name requested by any workspace is examined: names the
root declares stay at the root's version when some workspace request is
compatible with it, other names hoist the best requested version. A
workspace whose request is incompatible with what was hoisted keeps that
request as a workspace-specific dependency, installed inside the workspace.
"""

from __future__ import annotations

import glob
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from common.fs_utils import read_json
from constants import Constants
from resolution.conflicts import conflict_severity
from resolution.models import Dependent, VersionConflict
from versioning import semver

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """A member package of a monorepo."""
    name: str
    path: str
    dependencies: Dict[str, str] = field(default_factory=dict)
    manifest: Dict = field(default_factory=dict, repr=False)


@dataclass
class WorkspaceResolution:
    """What goes to the shared root and what stays inside each workspace."""
    hoisted: Dict[str, str] = field(default_factory=dict)
    workspace_specific: Dict[str, Dict[str, str]] = field(default_factory=dict)
    conflicts: List[VersionConflict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def hoisted_version(self, name: str) -> Optional[str]:
        """Lowest concrete version the hoisted request for ``name`` admits.

        Non-semver requests (tags, paths) are returned as written.
        """
        spec = self.hoisted.get(name)
        if spec is None:
            return None
        return semver.min_version(spec) or spec


def _range_sort_key(spec: str):
    floor = semver.min_version(spec)
    return (semver.version_sort_key(floor or ""), spec)


def highest_requested(versions: Iterable[str]) -> str:
    """Highest of the requested versions/ranges, ranges compared by their lowest match."""
    return max(versions, key=_range_sort_key)


class WorkspaceResolver:
    """Builds a cross-workspace version map and decides hoisting."""

    def __init__(self, root_dir: str):
        self.root_dir = os.path.abspath(root_dir)
        self.workspaces: Dict[str, Workspace] = {}
        # package name -> requested version -> requesting workspaces
        self.version_map: Dict[str, Dict[str, List[str]]] = {}

    def discover_workspaces(self, patterns: Iterable[str]) -> List[Workspace]:
        """Expand ``patterns`` under the root and load each member's manifest.

        Patterns starting with ``!`` exclude matches. Directories without a
        readable ``package.json`` that names the package are skipped.
        """
        included: List[str] = []
        excluded = set()
        for pattern in patterns:
            negate = pattern.startswith("!")
            expanded = glob.glob(os.path.join(self.root_dir, pattern[1:] if negate else pattern))
            for match in sorted(expanded):
                path = os.path.abspath(match)
                if not os.path.isdir(path):
                    continue
                if negate:
                    excluded.add(path)
                elif path not in included:
                    included.append(path)

        for path in included:
            if path in excluded:
                continue
            manifest_path = os.path.join(path, Constants.PACKAGE_JSON_FILE)
            manifest = read_json(manifest_path)
            if not isinstance(manifest, dict) or not manifest.get("name"):
                logger.warning("Could not read workspace manifest at %s; skipping", manifest_path)
                continue
            deps: Dict[str, str] = {}
            deps.update(manifest.get("dependencies") or {})
            deps.update(manifest.get("devDependencies") or {})
            workspace = Workspace(name=manifest["name"], path=path, dependencies=deps, manifest=manifest)
            self.workspaces[workspace.name] = workspace
            logger.debug("Found workspace %s at %s", workspace.name, path)
        return list(self.workspaces.values())

    def build_dependency_graph(self) -> List[VersionConflict]:
        """Aggregate requested versions per dependency name across workspaces.

        Returns:
            list: A ``VersionConflict`` for every name requested at more than
            one distinct version.
        """
        self.version_map = {}
        for ws_name, workspace in self.workspaces.items():
            for dep, version in workspace.dependencies.items():
                self.version_map.setdefault(dep, {}).setdefault(str(version), []).append(ws_name)
        conflicts = self.version_conflicts()
        for conflict in conflicts:
            logger.warning(
                "Version conflict for %s: %s",
                conflict.package,
                "; ".join(
                    f"{v}: {', '.join(self.version_map[conflict.package][v])}" for v in conflict.versions
                ),
            )
        return conflicts

    def version_conflicts(self) -> List[VersionConflict]:
        conflicts = []
        for name in sorted(self.version_map):
            requests = self.version_map[name]
            if len(requests) < 2:
                continue
            conflict = VersionConflict(
                package=name,
                versions=tuple(sorted(requests, key=_range_sort_key)),
                dependents=[
                    Dependent(name=ws, version=version, source="workspace")
                    for version, workspaces in requests.items()
                    for ws in workspaces
                ],
            )
            conflict.severity = conflict_severity(conflict)
            conflicts.append(conflict)
        return conflicts

    def resolve_version_conflict(
        self, name: str, versions: List[str], root_version: Optional[str] = None
    ) -> Tuple[str, Optional[str]]:
        """Pick one of ``versions`` to hoist.

        Prefers the highest version compatible with ``root_version``, else the
        highest requested version overall.

        Returns:
            tuple: ``(version, warning or None)``; the warning is set when the
            pick is not compatible with every request.
        """
        if root_version:
            compatible = [v for v in versions if semver.specs_compatible(v, root_version)]
            if compatible:
                return highest_requested(compatible), None
        highest = highest_requested(versions)
        if all(semver.specs_compatible(highest, v) for v in versions):
            return highest, None
        warning = (
            f"Could not find compatible version for {name}. "
            f"Using {highest} but some workspaces may have issues."
        )
        return highest, warning

    def resolve_dependencies(
        self,
        root_dependencies: Optional[Mapping[str, str]] = None,
        root_dev_dependencies: Optional[Mapping[str, str]] = None,
    ) -> WorkspaceResolution:
        """Decide the hoisted dependency set and per-workspace leftovers."""
        if not self.version_map and self.workspaces:
            self.build_dependency_graph()
        result = WorkspaceResolution()
        root: Dict[str, str] = {}
        root.update(root_dependencies or {})
        root.update(root_dev_dependencies or {})
        result.hoisted.update(root)

        for name in sorted(self.version_map):
            versions = list(self.version_map[name])
            root_version = root.get(name)
            if root_version is not None:
                if any(semver.specs_compatible(v, root_version) for v in versions):
                    logger.debug("Using root version for %s: %s", name, root_version)
                    continue
                chosen, warning = self.resolve_version_conflict(name, versions, root_version)
            elif len(versions) == 1:
                chosen, warning = versions[0], None
            else:
                chosen, warning = self.resolve_version_conflict(name, versions)
            if warning:
                logger.warning(warning)
                result.warnings.append(warning)
            result.hoisted[name] = chosen
            logger.debug("Hoisting %s@%s", name, chosen)

        for ws_name in sorted(self.workspaces):
            local: Dict[str, str] = {}
            for dep, requested in self.workspaces[ws_name].dependencies.items():
                hoisted = result.hoisted.get(dep)
                if hoisted is None or not semver.specs_compatible(str(requested), hoisted):
                    local[dep] = str(requested)
            if local:
                result.workspace_specific[ws_name] = local

        result.conflicts = self.version_conflicts()
        return result

    def workspace_paths(self) -> List[str]:
        return [ws.path for ws in self.workspaces.values()]

    def all_dependencies(
        self,
        root_dependencies: Optional[Mapping[str, str]] = None,
        root_dev_dependencies: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        """Hoisted set plus workspace-specific requests for names not hoisted."""
        resolution = self.resolve_dependencies(root_dependencies, root_dev_dependencies)
        merged = dict(resolution.hoisted)
        for deps in resolution.workspace_specific.values():
            for name, version in deps.items():
                merged.setdefault(name, version)
        return merged
