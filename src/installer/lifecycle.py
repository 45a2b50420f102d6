"""Package lifecycle scripts run as awaited child processes.

Each script is spawned with the package directory as working directory and
the parent environment plus npm-style hints; its exit status is mapped to a
``ScriptResult``. A failing script never raises.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from common.logging_utils import Timer, extra_context
from constants import Constants, LifecycleEvents

logger = logging.getLogger(__name__)

INSTALL_EVENTS = (LifecycleEvents.PREINSTALL, LifecycleEvents.INSTALL, LifecycleEvents.POSTINSTALL)


def is_binary_package(name: str) -> bool:
    return name.lower() in Constants.BINARY_PACKAGES


def binary_env(binary_cache_dir: str) -> Dict[str, str]:
    """Download-location hints shared by binary packages (browsers, electron)."""
    return {
        "PLAYWRIGHT_BROWSERS_PATH": os.path.join(binary_cache_dir, "playwright"),
        "PUPPETEER_CACHE_DIR": os.path.join(binary_cache_dir, "puppeteer"),
        "ELECTRON_CACHE": os.path.join(binary_cache_dir, "electron"),
    }


@dataclass(frozen=True)
class ScriptResult:
    """Completion of one lifecycle script."""
    package: str
    event: str
    command: str
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.exit_code == 0

    @property
    def message(self) -> str:
        if self.ok:
            return f"[{self.package}] {self.event} script succeeded"
        if self.error is not None:
            return f"[{self.package}] {self.event} script could not start: {self.error}"
        return f"[{self.package}] {self.event} script failed with code {self.exit_code}"


class LifecycleRunner:
    """Runs ``preinstall``, ``install`` and ``postinstall`` for installed packages."""

    def __init__(
        self,
        extra_env: Optional[Mapping[str, str]] = None,
        events: Sequence[LifecycleEvents] = INSTALL_EVENTS,
        binary_cache_dir: Optional[str] = None,
    ):
        self.extra_env = dict(extra_env or {})
        self.events = tuple(events)
        self.binary_cache_dir = binary_cache_dir

    def binary_hints(self, manifest: Mapping[str, Any]) -> Dict[str, str]:
        name = manifest.get("name")
        if not self.binary_cache_dir or not isinstance(name, str) or not is_binary_package(name):
            return {}
        return binary_env(self.binary_cache_dir)

    def build_env(self, package_dir: str, manifest: Mapping[str, Any], event: str) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        env.setdefault("NODE_ENV", "production")
        env["npm_lifecycle_event"] = event
        if manifest.get("name"):
            env["npm_package_name"] = str(manifest["name"])
        if manifest.get("version"):
            env["npm_package_version"] = str(manifest["version"])
        for key, value in self.binary_hints(manifest).items():
            env.setdefault(key, value)
        bin_dir = os.path.join(package_dir, Constants.MODULES_DIR, ".bin")
        env["PATH"] = bin_dir + os.pathsep + env.get("PATH", "")
        return env

    async def run_script(
        self, package: str, package_dir: str, event: str, command: str, manifest: Mapping[str, Any]
    ) -> ScriptResult:
        """Spawn ``command`` through the shell and wait for it to exit.

        Standard streams are inherited from this process.
        """
        logger.info("[%s] Running %s script...", package, event)
        env = self.build_env(package_dir, manifest, event)
        with Timer() as timer:
            try:
                process = await asyncio.create_subprocess_shell(command, cwd=package_dir, env=env)
                exit_code = await process.wait()
            except OSError as exc:
                result = ScriptResult(package, event, command, error=str(exc))
            else:
                result = ScriptResult(package, event, command, exit_code=exit_code)
        log = logger.debug if result.ok else logger.warning
        log(
            result.message,
            extra=extra_context(
                event="lifecycle_script",
                component="installer",
                action=event,
                outcome="success" if result.ok else "failure",
                package=package,
                duration_ms=timer.duration_ms(),
            ),
        )
        return result

    async def run_all(self, package: str, package_dir: str, manifest: Mapping[str, Any]) -> List[ScriptResult]:
        """Run the configured events in order, stopping after the first failure.

        Returns:
            list: One result per script that ran; events without a script are
            not represented.
        """
        scripts = manifest.get("scripts") or {}
        if not isinstance(scripts, dict):
            return []
        if self.binary_hints(manifest) and any(scripts.get(e.value) for e in self.events):
            os.makedirs(self.binary_cache_dir, exist_ok=True)
            logger.debug("Using binary cache %s for %s", self.binary_cache_dir, package)
        results: List[ScriptResult] = []
        for event in self.events:
            command = scripts.get(event.value)
            if not command:
                continue
            result = await self.run_script(package, package_dir, event.value, str(command), manifest)
            results.append(result)
            if not result.ok:
                break
        return results
