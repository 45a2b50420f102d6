"""npm-flavoured semver helpers built on ``semantic_version``."""

import re
from typing import Iterable, List, Optional, Tuple, Union

import semantic_version

_VERSION_TOKEN = re.compile(r"(\d+)(?:\.(\d+|[xX*]))?(?:\.(\d+|[xX*]))?(-[0-9A-Za-z.-]+)?")

SpecType = Union[semantic_version.NpmSpec, semantic_version.SimpleSpec]


def parse_version(value: str) -> Optional[semantic_version.Version]:
    """Parse a concrete version, tolerating a leading ``v`` or ``=``."""
    if not isinstance(value, str):
        return None
    text = value.strip().lstrip("=v").strip()
    if not text:
        return None
    try:
        return semantic_version.Version(text)
    except ValueError:
        return None


def _normalize_spec(spec_str: str) -> str:
    """Normalize npm range syntax (hyphen, x-ranges) into SimpleSpec-compatible form."""
    s = spec_str.strip()

    # Hyphen ranges: "1.2.3 - 1.4.5" => ">=1.2.3,<=1.4.5"
    m = re.match(r'^\s*([0-9A-Za-z\.\-\+]+)\s+-\s+([0-9A-Za-z\.\-\+]+)\s*$', s)
    if m:
        return f">={m.group(1)},<={m.group(2)}"

    s2 = s.replace('*', 'x').lower()
    m = re.match(r'^\s*(\d+)\.(\d+)\.x\s*$', s2)
    if m:
        major, minor = int(m.group(1)), int(m.group(2))
        return f">={major}.{minor}.0,<{major}.{minor + 1}.0"

    m = re.match(r'^\s*(\d+)(?:\.x)?\s*$', s2)
    if m:
        major = int(m.group(1))
        return f">={major}.0.0,<{major + 1}.0.0"

    return spec_str


def parse_range(spec_str: str) -> Optional[SpecType]:
    """Parse an npm range; empty, ``*`` and ``latest`` mean any version.

    Returns:
        The parsed spec, or None when the string is not a range at all.
    """
    text = (spec_str or "").strip()
    if text in ("", "*", "latest", "x", "X"):
        text = "*"
    # Prefer NpmSpec which understands ^, ~, hyphen ranges, and x-ranges natively
    try:
        return semantic_version.NpmSpec(text)
    except ValueError:
        pass
    try:
        return semantic_version.SimpleSpec(_normalize_spec(text))
    except ValueError:
        return None


def satisfies(version: str, spec_str: str) -> bool:
    """True when concrete ``version`` matches range ``spec_str``."""
    ver = parse_version(version)
    spec = parse_range(spec_str)
    if ver is None or spec is None:
        return False
    return spec.match(ver)


def _parsed(versions: Iterable[str]) -> List[Tuple[semantic_version.Version, str]]:
    out = []
    for v in versions:
        parsed = parse_version(v)
        if parsed is not None:
            out.append((parsed, v))
    return out


def max_satisfying(versions: Iterable[str], spec_str: str) -> Optional[str]:
    """Highest version in ``versions`` matching ``spec_str`` (original string)."""
    spec = parse_range(spec_str)
    if spec is None:
        return None
    matching = [(ver, raw) for ver, raw in _parsed(versions) if spec.match(ver)]
    if not matching:
        return None
    return max(matching, key=lambda item: item[0])[1]


def version_sort_key(value: str) -> Tuple[int, object, str]:
    """Sort key ordering semver versions correctly and anything else first."""
    parsed = parse_version(value)
    if parsed is None:
        return (0, semantic_version.Version("0.0.0"), str(value))
    return (1, parsed, str(value))


def sort_versions(versions: Iterable[str]) -> List[str]:
    return sorted(versions, key=version_sort_key)


def highest_version(versions: Iterable[str]) -> Optional[str]:
    ordered = sort_versions(versions)
    return ordered[-1] if ordered else None


def min_version(spec_str: str) -> Optional[str]:
    """Lowest concrete version a range can match, when it can be read off the range.

    ``^2.0.0`` -> ``2.0.0``, ``~1.2`` -> ``1.2.0``, ``1.x`` -> ``1.0.0``. Returns
    None when the floor is not itself a match (e.g. ``>1.0.0``) or the string
    is not a range.
    """
    exact = parse_version(spec_str)
    if exact is not None:
        return str(exact)
    if parse_range(spec_str) is None:
        return None
    text = (spec_str or "").strip()
    if text in ("", "*", "latest", "x", "X"):
        return "0.0.0"
    m = _VERSION_TOKEN.search(text)
    if not m:
        return None
    parts = [m.group(1), m.group(2) or "0", m.group(3) or "0"]
    parts = ["0" if p in ("x", "X", "*") else p for p in parts]
    candidate = ".".join(parts) + (m.group(4) or "")
    return candidate if satisfies(candidate, text) else None


def specs_compatible(a: str, b: str) -> bool:
    """Heuristic mutual compatibility of two requested versions or ranges.

    Exact versions compare by equality or range membership; two ranges are
    compatible when the floor of either one satisfies the other. Strings that
    are neither (tags, paths) are only compatible with themselves.
    """
    if a == b:
        return True
    va, vb = parse_version(a), parse_version(b)
    if va is not None and vb is not None:
        return va == vb
    if va is not None:
        return satisfies(a, b)
    if vb is not None:
        return satisfies(b, a)
    if parse_range(a) is None or parse_range(b) is None:
        return False
    floor_a, floor_b = min_version(a), min_version(b)
    return bool(
        (floor_a is not None and satisfies(floor_a, b))
        or (floor_b is not None and satisfies(floor_b, a))
    )


def diff(a: str, b: str) -> Optional[str]:
    """Most significant differing component: major, minor, patch or prerelease."""
    va, vb = parse_version(a), parse_version(b)
    if va is None or vb is None:
        return None
    if va.major != vb.major:
        return "major"
    if va.minor != vb.minor:
        return "minor"
    if va.patch != vb.patch:
        return "patch"
    if va.prerelease != vb.prerelease:
        return "prerelease"
    return None
