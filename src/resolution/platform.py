"""npm-style platform identifiers and platform-specific package detection."""

from __future__ import annotations

import platform
import re
import sys
from dataclasses import dataclass
from typing import Optional

_PLATFORM_MAP = {
    "win32": "win32",
    "cygwin": "win32",
    "darwin": "darwin",
    "linux": "linux",
}

_ARCH_MAP = {
    "x86_64": "x64",
    "amd64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
}

_OS_NAMES = ("win32", "darwin", "linux")

_PLATFORM_PATTERNS = (
    re.compile(r"^@.*/(win32|darwin|linux)-(x64|arm64|ia32)"),
    re.compile(r"^@.*/(win32|darwin|linux)"),
    re.compile(r"^@.*/(x64|arm64|ia32)"),
    re.compile(r"^.*-(win32|darwin|linux)-(x64|arm64|ia32)"),
    re.compile(r"^.*-(win32|darwin|linux)"),
    re.compile(r"^.*-(x64|arm64|ia32)$"),
)


@dataclass(frozen=True)
class PlatformInfo:
    platform: str
    arch: str

    @property
    def combined(self) -> str:
        return f"{self.platform}-{self.arch}"


def current_platform() -> PlatformInfo:
    """Platform and arch of this interpreter, named the way npm names them."""
    plat = sys.platform
    if plat.startswith("linux"):
        plat = "linux"
    machine = platform.machine().lower()
    return PlatformInfo(
        platform=_PLATFORM_MAP.get(plat, plat),
        arch=_ARCH_MAP.get(machine, machine),
    )


def is_platform_specific_package(name: str) -> bool:
    """True when the package name encodes an OS and/or CPU architecture."""
    return any(p.search(name) for p in _PLATFORM_PATTERNS)


def is_package_compatible(name: str, info: Optional[PlatformInfo] = None) -> bool:
    """Whether a (possibly platform-specific) package fits ``info``.

    Names carrying an OS must match the combined ``os-arch`` identifier; names
    carrying only an arch must match the arch.
    """
    if not is_platform_specific_package(name):
        return True
    info = info or current_platform()
    if "-" in name and any(os_name in name for os_name in _OS_NAMES):
        return info.combined in name
    return info.platform in name or info.arch in name
