"""Version conflict detection, highest-version selection and severity scoring."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Sequence

from versioning import semver

from .models import ROOT, Dependent, VersionConflict

logger = logging.getLogger(__name__)


def select_highest(versions: Iterable[str]) -> str:
    """Canonical pick among conflicting versions: highest semver wins.

    Strings that are not versions (paths, URLs) sort below every real
    version; ties between them fall back to string order.
    """
    chosen = semver.highest_version(versions)
    if chosen is None:
        raise ValueError("select_highest() needs at least one version")
    return chosen


def conflict_severity(conflict: VersionConflict) -> float:
    """Score a conflict from 0 to 1.

    Factors: number of distinct versions (up to 0.3), number of dependents
    (up to 0.3), whether the project requests it directly (0.2), and the
    spread between lowest and highest version (0.2 major, 0.1 minor).
    """
    score = min(len(conflict.versions) / 10, 0.3)
    score += min(len(conflict.dependents) / 20, 0.3)
    if any(d.source == ROOT or d.name == ROOT for d in conflict.dependents):
        score += 0.2
    ordered = semver.sort_versions(conflict.versions)
    spread = semver.diff(ordered[0], ordered[-1]) if len(ordered) > 1 else None
    if spread == "major":
        score += 0.2
    elif spread == "minor":
        score += 0.1
    return round(min(score, 1.0), 4)


def detect_conflicts(
    versions_by_name: Mapping[str, Iterable[str]],
    dependents_by_name: Mapping[str, Sequence[Dependent]],
) -> List[VersionConflict]:
    """Build a ``VersionConflict`` for every name seen with two or more versions.

    Args:
        versions_by_name: Distinct versions (or ranges) seen per package name.
        dependents_by_name: Requesters per package name.

    Returns:
        list: Conflicts ordered by descending severity, then name. Each has
        ``selected`` set to the highest version.
    """
    conflicts: List[VersionConflict] = []
    for name, versions in versions_by_name.items():
        distinct = tuple(semver.sort_versions(set(versions)))
        if len(distinct) < 2:
            continue
        conflict = VersionConflict(
            package=name,
            versions=distinct,
            dependents=list(dependents_by_name.get(name, ())),
            selected=select_highest(distinct),
        )
        conflict.severity = conflict_severity(conflict)
        conflicts.append(conflict)
    conflicts.sort(key=lambda c: (-c.severity, c.package))
    return conflicts


def summarize(conflicts: Iterable[VersionConflict]) -> Dict[str, List[VersionConflict]]:
    """Bucket conflicts into high (>= 0.7), medium (>= 0.3) and low severity."""
    impact: Dict[str, List[VersionConflict]] = {"high": [], "medium": [], "low": []}
    for conflict in conflicts:
        if conflict.severity >= 0.7:
            impact["high"].append(conflict)
        elif conflict.severity >= 0.3:
            impact["medium"].append(conflict)
        else:
            impact["low"].append(conflict)
    return impact
