"""Registry client interface, npm implementation and metadata cache."""

from .client import NpmRegistryClient, RegistryClient, package_url
from .metadata_cache import MetadataCache

__all__ = ["MetadataCache", "NpmRegistryClient", "RegistryClient", "package_url"]
