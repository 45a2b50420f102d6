"""Installation of resolved graphs into module directories."""

from .executor import InstallExecutor, InstallStats
from .lifecycle import LifecycleRunner, ScriptResult

__all__ = ["InstallExecutor", "InstallStats", "LifecycleRunner", "ScriptResult"]
