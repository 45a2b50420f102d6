"""Lockfile codec."""

from .codec import LockfileCodec, LockfileDocument, compute_integrity

__all__ = ["LockfileCodec", "LockfileDocument", "compute_integrity"]
