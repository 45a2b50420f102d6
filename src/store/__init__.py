"""Content-addressable package store, archive verification and prefetching."""

from .cas import ArchiveMeta, ContentAddressableStore

__all__ = ["ArchiveMeta", "ContentAddressableStore"]
