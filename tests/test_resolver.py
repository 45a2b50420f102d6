"""Tests for dependency resolution."""

import asyncio
import logging
from dataclasses import replace
from unittest.mock import patch

import pytest

from common.errors import (
    AliasCycleError,
    AliasDepthError,
    OfflineError,
    RegistryError,
    ResolutionError,
)
from registry.metadata_cache import MetadataCache
from resolution import DependencyResolver, PackageKind, select_version


def _resolve(registry, config, requested, offline=False):
    resolver = DependencyResolver(MetadataCache(registry, config.cache_dir), config)
    return asyncio.run(resolver.resolve(requested, offline=offline))


def _versions(graph):
    return {name: package.version for name, package in graph.packages.items()}


class TestSelectVersion:
    """Version selection from a packument."""

    META = {
        "dist-tags": {"latest": "1.3.0", "next": "2.0.0-rc.1"},
        "versions": {"1.2.0": {}, "1.3.0": {}, "2.0.0-rc.1": {}},
    }

    def test_range(self):
        assert select_version("a", self.META, "^1.2.0") == ("1.3.0", None)

    def test_latest_and_empty(self):
        assert select_version("a", self.META, "latest")[0] == "1.3.0"
        assert select_version("a", self.META, "")[0] == "1.3.0"

    def test_dist_tag(self):
        assert select_version("a", self.META, "next")[0] == "2.0.0-rc.1"

    def test_unsatisfiable_falls_back_to_latest_with_warning(self):
        version, warning = select_version("a", self.META, "^5.0.0")
        assert version == "1.3.0"
        assert "No version of a satisfies ^5.0.0" in warning

    def test_no_versions(self):
        with pytest.raises(ResolutionError):
            select_version("a", {"versions": {}}, "^1.0.0")

    def test_dangling_tag(self):
        meta = {"dist-tags": {"latest": "9.9.9"}, "versions": {"1.0.0": {}}}
        with pytest.raises(ResolutionError):
            select_version("a", meta, "latest")


class TestResolveBasics:
    """Single packages, transitive walks and verbatim specs."""

    def test_highest_satisfying_version(self, registry, config):
        for version in ("1.2.0", "1.3.0", "2.0.0"):
            registry.publish("a", version)

        result = _resolve(registry, config, {"a": "^1.2.0"})

        pkg = result.graph["a"]
        assert pkg.version == "1.3.0"
        assert pkg.kind == PackageKind.REGISTRY
        assert pkg.parent is None
        assert pkg.tarball_url.endswith("a-1.3.0.tgz")
        assert pkg.integrity.startswith("sha512-")

    def test_transitive_dependencies_record_parent(self, registry, config):
        registry.publish("app-lib", "1.0.0", dependencies={"util": "^2.0.0"})
        registry.publish("util", "2.1.0")

        result = _resolve(registry, config, {"app-lib": "^1.0.0"})

        assert sorted(result.graph) == ["app-lib", "util"]
        assert result.graph["util"].parent == "app-lib"

    def test_dependency_cycle_terminates(self, registry, config):
        registry.publish("a", "1.0.0", dependencies={"b": "^1.0.0"})
        registry.publish("b", "1.0.0", dependencies={"a": "^1.0.0"})

        result = _resolve(registry, config, {"a": "^1.0.0"})

        assert _versions(result.graph) == {"a": "1.0.0", "b": "1.0.0"}

    def test_local_and_remote_specs_are_verbatim(self, registry, config):
        result = _resolve(
            registry,
            config,
            {"lib": "file:../lib", "tool": "https://example.com/tool-1.0.0.tgz", "gh": "github:u/r#v2"},
        )

        assert result.graph["lib"].kind == PackageKind.LOCAL
        assert result.graph["lib"].version == "file:../lib"
        assert result.graph["tool"].tarball_url == "https://example.com/tool-1.0.0.tgz"
        assert result.graph["gh"].tarball_url == "https://codeload.github.com/u/r/tar.gz/v2"
        assert registry.metadata_calls == {}

    def test_missing_required_package_is_fatal(self, registry, config):
        with pytest.raises(RegistryError):
            _resolve(registry, config, {"nope": "^1.0.0"})


class TestDeduplication:
    """One entry per name, highest version, independent of completion order."""

    def _publish(self, registry):
        registry.publish("x", "1.0.0", dependencies={"c": "^1.0.0"})
        registry.publish("y", "1.0.0", dependencies={"c": "^2.0.0"})
        registry.publish("c", "1.0.0", dependencies={"d": "^1.0.0"})
        registry.publish("c", "2.0.0")
        registry.publish("d", "1.0.0")

    def test_highest_version_wins(self, registry, config, caplog):
        self._publish(registry)

        with caplog.at_level(logging.WARNING):
            result = _resolve(registry, config, {"x": "^1.0.0", "y": "^1.0.0"})

        assert result.graph["c"].version == "2.0.0"
        assert result.graph["c"].parent == "y"
        assert "Resolved version conflict for c: 1.0.0, 2.0.0 -> 2.0.0" in result.warnings
        assert "Resolved version conflict for c" in caplog.text

        conflict = result.conflicts[0]
        assert conflict.package == "c"
        assert conflict.versions == ("1.0.0", "2.0.0")
        assert conflict.selected == "2.0.0"
        assert conflict.severity == 0.5

    def test_losing_versions_subtree_is_pruned(self, registry, config):
        self._publish(registry)

        result = _resolve(registry, config, {"x": "^1.0.0", "y": "^1.0.0"})

        assert "d" not in result.graph

    def test_repeatable(self, registry, config):
        self._publish(registry)
        first = _resolve(registry, config, {"x": "^1.0.0", "y": "^1.0.0"})
        second = _resolve(registry, replace(config, concurrency=1), {"y": "^1.0.0", "x": "^1.0.0"})

        assert _versions(first.graph) == _versions(second.graph)
        assert [p.parent for p in first.graph.packages.values()] == [
            second.graph[name].parent for name in first.graph
        ]


class TestAliases:
    """``npm:`` alias handling."""

    def test_alias_keeps_real_package(self, registry, config):
        registry.publish("lodash", "4.17.21")

        result = _resolve(registry, config, {"my-lodash": "npm:lodash@^4.0.0"})

        alias = result.graph["my-lodash"]
        assert alias.kind == PackageKind.ALIAS
        assert alias.real_name == "lodash"
        assert alias.version == "4.17.21"
        assert result.graph["lodash"].version == "4.17.21"

    def test_alias_cycle(self, registry, config):
        with pytest.raises(AliasCycleError, match="Alias cycle detected: a -> b -> a"):
            _resolve(registry, config, {"a": "npm:b@npm:a@npm:b@1.0.0"})

    def test_alias_depth(self, registry, config):
        shallow = replace(config, alias_max_depth=2)
        with pytest.raises(AliasDepthError, match="too deep"):
            _resolve(registry, shallow, {"a": "npm:b@npm:c@npm:d@1.0.0"})


class TestOffline:
    def test_uncached_metadata_fails_fast(self, registry, config):
        registry.publish("a", "1.0.0")

        with pytest.raises(OfflineError):
            _resolve(registry, config, {"a": "^1.0.0"}, offline=True)
        assert registry.metadata_calls == {}

    def test_cached_metadata_resolves_offline(self, registry, config):
        registry.publish("a", "1.0.0", dependencies={"b": "^1.0.0"})
        registry.publish("b", "1.1.0")
        online = _resolve(registry, config, {"a": "^1.0.0"})
        calls = dict(registry.metadata_calls)

        offline = _resolve(registry, config, {"a": "^1.0.0"}, offline=True)

        assert _versions(offline.graph) == _versions(online.graph)
        assert registry.metadata_calls == calls


class TestOptionalDependencies:
    """Optional dependency failures become warnings."""

    def test_failure_is_a_warning(self, registry, config):
        registry.publish("a", "1.0.0", optional_dependencies={"ghost": "^1.0.0"})

        result = _resolve(registry, config, {"a": "^1.0.0"})

        assert "ghost" not in result.graph
        [warning] = result.optional_warnings
        assert warning.dependency == "ghost"
        assert not warning.platform_skip
        assert warning.message.startswith("Optional dependency failed: a@1.0.0")

    def test_incompatible_platform_is_skipped(self, registry, config):
        registry.publish("a", "1.0.0", optional_dependencies={"@esbuild/darwin-arm64": "^1.0.0"})
        registry.publish("@esbuild/darwin-arm64", "1.0.0")

        with patch("resolution.resolver.is_package_compatible", return_value=False):
            result = _resolve(registry, config, {"a": "^1.0.0"})

        assert "@esbuild/darwin-arm64" not in result.graph
        [warning] = result.optional_warnings
        assert warning.platform_skip
        assert "@esbuild/darwin-arm64" not in registry.metadata_calls

    def test_optional_listed_in_dependencies_is_not_required(self, registry, config):
        registry.publish(
            "a",
            "1.0.0",
            dependencies={"ghost": "^1.0.0"},
            optional_dependencies={"ghost": "^1.0.0"},
        )

        result = _resolve(registry, config, {"a": "^1.0.0"})

        assert list(result.graph) == ["a"]
        assert len(result.optional_warnings) == 1


class TestOptionalAndRequiredPaths:
    """A package reached through both an optional and a required path."""

    def _publish(self, registry):
        registry.publish("x", "1.0.0", dependencies={"missing": "^1.0.0"})
        registry.publish("a", "1.0.0", optional_dependencies={"x": "^1.0.0"})
        registry.publish("b", "1.0.0", dependencies={"x": "^1.0.0"})

    @pytest.mark.parametrize("order", [("a", "b"), ("b", "a")])
    def test_required_failure_is_fatal_in_any_order(self, registry, config, order):
        self._publish(registry)

        with pytest.raises(RegistryError, match="missing"):
            _resolve(registry, config, {name: "^1.0.0" for name in order})

    def test_optional_only_failure_drops_the_subtree(self, registry, config):
        self._publish(registry)

        result = _resolve(registry, config, {"a": "^1.0.0"})

        assert list(result.graph) == ["a"]
        [warning] = result.optional_warnings
        assert warning.dependency == "x"
        assert "missing" in warning.reason

    def test_cycle_through_two_roots_completes(self, registry, config):
        registry.publish("a", "1.0.0", dependencies={"b": "^1.0.0"})
        registry.publish("b", "1.0.0", dependencies={"a": "^1.0.0", "missing": "^1.0.0"})

        with pytest.raises(RegistryError, match="missing"):
            _resolve(registry, config, {"a": "^1.0.0", "b": "^1.0.0"})


class TestAliasSlot:
    """An alias and a registry package competing for one name and version."""

    @pytest.mark.parametrize("order", [("x", "z"), ("z", "x")])
    def test_registry_package_replaces_alias(self, registry, config, order):
        registry.publish("x", "1.0.0")
        registry.publish("y", "1.0.0")
        registry.publish("z", "1.0.0", dependencies={"x": "1.0.0"})
        specs = {"x": "npm:y@1.0.0", "z": "^1.0.0"}

        result = _resolve(registry, config, {name: specs[name] for name in order})

        assert result.graph["x"].kind == PackageKind.REGISTRY
        assert result.graph["x"].real_name is None
        assert "Package x@1.0.0 replaces alias x -> y@1.0.0" in result.warnings


class TestPeerWarnings:
    """Peer checks run over the final graph."""

    def test_missing_peer(self, registry, config):
        registry.publish("plugin", "1.0.0", peer_dependencies={"react": "^18.0.0"})

        result = _resolve(registry, config, {"plugin": "^1.0.0"})

        [warning] = result.peer_warnings
        assert warning.missing
        assert warning.message == "Peer dependency missing: plugin@1.0.0 requires react@^18.0.0"

    def test_version_mismatch(self, registry, config):
        registry.publish("plugin", "1.0.0", peer_dependencies={"react": "^18.0.0"})
        registry.publish("react", "17.0.2")

        result = _resolve(registry, config, {"plugin": "^1.0.0", "react": "17.0.2"})

        [warning] = result.peer_warnings
        assert not warning.missing
        assert warning.found == "17.0.2"
        assert "version mismatch" in warning.message

    def test_satisfied_peer(self, registry, config):
        registry.publish("plugin", "1.0.0", peer_dependencies={"react": "^18.0.0"})
        registry.publish("react", "18.2.0")

        result = _resolve(registry, config, {"plugin": "^1.0.0", "react": "^18.0.0"})

        assert result.peer_warnings == []
