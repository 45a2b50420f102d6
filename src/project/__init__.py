"""Project-level install orchestration."""

from .manifest import ProjectManifest, deps_changed, read_manifest
from .pipeline import InstallOptions, InstallPipeline, InstallReport, install_project

__all__ = [
    "InstallOptions",
    "InstallPipeline",
    "InstallReport",
    "ProjectManifest",
    "deps_changed",
    "install_project",
    "read_manifest",
]
