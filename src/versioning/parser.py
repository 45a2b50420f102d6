"""Parsing of manifest dependency values into typed specifiers."""

import re
from typing import Optional, Tuple

from .models import (
    AliasSpec,
    DependencySpec,
    LocalProtocol,
    LocalSpec,
    RegistrySpec,
    RemoteSpec,
    ResolutionMode,
)
from .semver import parse_range, parse_version

ALIAS_PREFIX = "npm:"

_VCS_PREFIXES = ("git+", "git:", "git@", "github:", "gitlab:", "bitbucket:", "gist:")
_GITHUB_SHORTHAND = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+(#.+)?$")
_GITHUB_REPO = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+?)(#(.+))?$")
_URL_PREFIXES = ("http://", "https://")


def split_name_range(value: str) -> Tuple[str, str]:
    """Split ``name@range`` on the first ``@`` that is not a scope marker.

    ``@scope/pkg@^1`` -> (``@scope/pkg``, ``^1``); ``pkg`` -> (``pkg``, ``""``).
    The range may itself be another alias (``b@npm:c@1`` -> (``b``, ``npm:c@1``)).
    """
    value = value.strip()
    at = value.find("@", 1)
    if at < 0:
        return value, ""
    return value[:at], value[at + 1:].strip()


def parse_npm_alias(raw: str) -> Optional[Tuple[str, str]]:
    """Return (real_name, range) for an ``npm:`` alias value, else None.

    A missing range means latest.
    """
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text.startswith(ALIAS_PREFIX):
        return None
    real_name, real_range = split_name_range(text[len(ALIAS_PREFIX):])
    if not real_name:
        return None
    return real_name, real_range or "latest"


def _is_vcs(text: str) -> bool:
    lowered = text.lower()
    if lowered.startswith(_VCS_PREFIXES):
        return True
    if lowered.startswith(_URL_PREFIXES) and (lowered.endswith(".git") or ".git#" in lowered):
        return True
    return bool(_GITHUB_SHORTHAND.match(text)) and parse_range(text) is None


def github_archive_url(spec: str) -> Optional[str]:
    """HTTPS tarball URL for ``github:user/repo[#ref]`` or ``user/repo[#ref]``.

    The ref defaults to ``main``. Any other locator returns None.
    """
    text = spec[len("github:"):] if spec.startswith("github:") else spec
    m = _GITHUB_REPO.match(text)
    if not m:
        return None
    user, repo, ref = m.group(1), m.group(2), m.group(4) or "main"
    return f"https://codeload.github.com/{user}/{repo}/tar.gz/{ref}"


def _determine_resolution_mode(spec: str) -> ResolutionMode:
    """Determine resolution mode from spec string."""
    if spec in ("", "latest"):
        return ResolutionMode.LATEST
    if parse_version(spec) is not None and not spec.startswith(("^", "~", "<", ">")):
        return ResolutionMode.EXACT
    if parse_range(spec) is not None:
        return ResolutionMode.RANGE
    return ResolutionMode.TAG


def parse_dependency_spec(raw: Optional[str]) -> DependencySpec:
    """Classify a manifest dependency value.

    Args:
        raw: Value from a ``dependencies`` map (None is treated as latest).

    Returns:
        DependencySpec: The matching variant; unrecognized strings become
        registry dist-tags.
    """
    text = str(raw).strip() if raw is not None else ""

    alias = parse_npm_alias(text)
    if alias is not None:
        real_name, real_range = alias
        return AliasSpec(raw=text, real_name=real_name, real_range=real_range)

    for protocol in LocalProtocol:
        prefix = protocol.value + ":"
        if text.startswith(prefix):
            return LocalSpec(raw=text, protocol=protocol, path=text[len(prefix):])

    if _is_vcs(text):
        return RemoteSpec(raw=text, url=text, vcs=True, archive_url=github_archive_url(text))
    if text.lower().startswith(_URL_PREFIXES):
        return RemoteSpec(raw=text, url=text, vcs=False, archive_url=text)

    return RegistrySpec(raw=text, mode=_determine_resolution_mode(text))
