"""Archive digest verification.

``integrity`` is a Subresource-Integrity string (``sha512-<base64>``, possibly
several space-separated entries); ``shasum`` is the legacy hex sha1. When
both are declared, both must match.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from typing import List, Optional

from common.errors import IntegrityError, UnsupportedAlgorithmError
from constants import Constants

logger = logging.getLogger(__name__)

# strongest first
SUPPORTED_ALGORITHMS = ("sha512", "sha384", "sha256", "sha1")


@dataclass(frozen=True)
class IntegrityEntry:
    algorithm: str
    digest: str


def parse_integrity(value: str) -> List[IntegrityEntry]:
    """Split an SRI string into entries; options after ``?`` are ignored.

    Raises:
        UnsupportedAlgorithmError: an entry is malformed or names an unknown algorithm.
    """
    entries = []
    for token in value.split():
        algorithm, sep, digest = token.partition("-")
        digest = digest.split("?", 1)[0]
        algorithm = algorithm.lower()
        if not sep or not digest:
            raise UnsupportedAlgorithmError(f"Malformed integrity value: {token!r}")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithmError(f"Unsupported integrity algorithm: {algorithm}")
        entries.append(IntegrityEntry(algorithm, digest))
    if not entries:
        raise UnsupportedAlgorithmError("Empty integrity value")
    return entries


def file_digest(path: str, algorithm: str) -> bytes:
    hasher = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(Constants.DOWNLOAD_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.digest()


def _decode(digest: str) -> Optional[bytes]:
    try:
        return base64.b64decode(digest, validate=True)
    except (binascii.Error, ValueError):
        return None


def verify_integrity(path: str, integrity: str, label: str = "") -> None:
    """Check the file at ``path`` against an SRI string.

    Only entries using the strongest algorithm present are compared; any one
    of them matching is enough.

    Raises:
        UnsupportedAlgorithmError: unknown or malformed algorithm.
        IntegrityError: the digest does not match.
    """
    entries = parse_integrity(integrity)
    strongest = min(entries, key=lambda e: SUPPORTED_ALGORITHMS.index(e.algorithm)).algorithm
    actual = file_digest(path, strongest)
    for entry in entries:
        if entry.algorithm == strongest and _decode(entry.digest) == actual:
            logger.debug("Integrity (%s) verified for %s", strongest, label or path)
            return
    got = base64.b64encode(actual).decode("ascii")
    raise IntegrityError(
        f"Integrity ({strongest}) mismatch for {label or path}: expected "
        f"{', '.join(e.digest for e in entries if e.algorithm == strongest)}, got {got}",
        package=label or None,
    )


def verify_shasum(path: str, shasum: str, label: str = "") -> None:
    """Check the legacy hex sha1 checksum.

    Raises:
        IntegrityError: the checksum does not match.
    """
    actual = file_digest(path, "sha1").hex()
    if actual != shasum.strip().lower():
        raise IntegrityError(
            f"Hash (sha1) mismatch for {label or path}: expected {shasum}, got {actual}",
            package=label or None,
        )
    logger.debug("Hash (sha1) verified for %s", label or path)


def verify_archive(
    path: str, integrity: Optional[str] = None, shasum: Optional[str] = None, label: str = ""
) -> None:
    """Run every check that has a declared value; neither declared means nothing to check."""
    if integrity:
        verify_integrity(path, integrity, label)
    if shasum:
        verify_shasum(path, shasum, label)


def compute_integrity(data: bytes, algorithm: str = "sha512") -> str:
    """SRI string for ``data``."""
    digest = hashlib.new(algorithm, data).digest()
    return f"{algorithm}-{base64.b64encode(digest).decode('ascii')}"
