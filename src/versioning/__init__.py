"""Dependency specifier models, parsing and npm semver helpers."""

from .models import (
    AliasSpec,
    DependencySpec,
    LocalProtocol,
    LocalSpec,
    RegistrySpec,
    RemoteSpec,
    ResolutionMode,
    SpecKind,
)
from .parser import parse_dependency_spec, parse_npm_alias

__all__ = [
    "AliasSpec",
    "DependencySpec",
    "LocalProtocol",
    "LocalSpec",
    "RegistrySpec",
    "RemoteSpec",
    "ResolutionMode",
    "SpecKind",
    "parse_dependency_spec",
    "parse_npm_alias",
]
