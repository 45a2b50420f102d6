"""Monorepo workspace discovery and hoisting."""

from .resolver import Workspace, WorkspaceResolution, WorkspaceResolver

__all__ = ["Workspace", "WorkspaceResolution", "WorkspaceResolver"]
