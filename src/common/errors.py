"""Exception taxonomy for the install core.

Fatal conditions are raised and abort the current resolve/install call.
Everything recoverable is reported as a warning on the returned result
instead of being raised.
"""

from __future__ import annotations

from typing import Optional, Sequence


class BlazeError(Exception):
    """Base class for all errors raised by the core."""


class RegistryError(BlazeError):
    """Registry metadata or archive could not be fetched."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class OfflineError(RegistryError):
    """Registry metadata is not available in the local cache in offline mode."""


class ResolutionError(BlazeError):
    """A dependency could not be resolved to a concrete version."""


class AliasError(ResolutionError):
    """Base class for npm alias chain failures."""

    def __init__(self, message: str, chain: Sequence[str]):
        super().__init__(message)
        self.chain = list(chain)


class AliasCycleError(AliasError):
    """An alias chain revisits one of its own names."""


class AliasDepthError(AliasError):
    """An alias chain exceeds the maximum depth."""


class IntegrityError(BlazeError):
    """A downloaded archive does not match its declared digest."""

    def __init__(self, message: str, package: Optional[str] = None):
        super().__init__(message)
        self.package = package


class UnsupportedAlgorithmError(IntegrityError):
    """The integrity field names a digest algorithm that cannot be checked."""


class ArchiveError(BlazeError):
    """An archive is corrupt or contains unsafe member paths."""


class ManifestError(BlazeError):
    """A project manifest is missing or unreadable."""


class LockTimeoutError(BlazeError, TimeoutError):
    """An advisory store lock could not be acquired in time."""


class LockfileError(BlazeError):
    """A lockfile exists but cannot be parsed."""
