"""Tests for lifecycle scripts and the concurrent install executor."""

import asyncio
import json
import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from common.errors import IntegrityError
from installer import InstallExecutor, LifecycleRunner
from installer.executor import module_path
from registry.metadata_cache import MetadataCache
from resolution import DependencyResolver
from store import ContentAddressableStore


def _resolve(registry, config, requested):
    resolver = DependencyResolver(MetadataCache(registry, config.cache_dir), config)
    return asyncio.run(resolver.resolve(requested)).graph


def _executor(registry, config):
    store = ContentAddressableStore.from_config(config, registry)
    return InstallExecutor(store, MetadataCache(registry, config.cache_dir), config)


class TestLifecycleRunner:
    """Scripts are spawned, awaited and mapped to results."""

    def test_exit_codes_map_to_results(self, tmp_path):
        runner = LifecycleRunner()
        manifest = {"name": "a", "version": "1.0.0", "scripts": {"preinstall": "true", "postinstall": "exit 3"}}

        results = asyncio.run(runner.run_all("a", str(tmp_path), manifest))

        assert [r.event for r in results] == ["preinstall", "postinstall"]
        assert results[0].ok
        assert results[1].exit_code == 3
        assert results[1].message == "[a] postinstall script failed with code 3"

    def test_stops_after_first_failure(self, tmp_path):
        runner = LifecycleRunner()
        manifest = {"scripts": {"preinstall": "exit 1", "postinstall": "touch ran"}}

        results = asyncio.run(runner.run_all("a", str(tmp_path), manifest))

        assert len(results) == 1
        assert not (tmp_path / "ran").exists()

    def test_environment(self, tmp_path):
        runner = LifecycleRunner({"EXTRA": "yes"})
        manifest = {
            "name": "a",
            "version": "2.0.0",
            "scripts": {"install": 'echo "$npm_package_name $npm_package_version $npm_lifecycle_event $EXTRA" > env.txt'},
        }

        asyncio.run(runner.run_all("a", str(tmp_path), manifest))

        assert (tmp_path / "env.txt").read_text().strip() == "a 2.0.0 install yes"

    def test_build_env_prepends_bin_dir(self, tmp_path):
        env = LifecycleRunner().build_env(str(tmp_path), {}, "postinstall")
        assert env["PATH"].startswith(os.path.join(str(tmp_path), "node_modules", ".bin"))
        assert env["npm_lifecycle_event"] == "postinstall"

    def test_spawn_error_is_a_failed_result(self, tmp_path):
        runner = LifecycleRunner()
        manifest = {"scripts": {"preinstall": "true", "postinstall": "true"}}

        results = asyncio.run(runner.run_all("a", str(tmp_path / "does-not-exist"), manifest))

        [result] = results
        assert result.error
        assert result.exit_code is None
        assert not result.ok
        assert "could not start" in result.message

    def test_binary_packages_get_cache_hints(self, tmp_path, monkeypatch):
        for key in ("PLAYWRIGHT_BROWSERS_PATH", "PUPPETEER_CACHE_DIR", "ELECTRON_CACHE"):
            monkeypatch.delenv(key, raising=False)
        cache = tmp_path / "binaries"
        runner = LifecycleRunner(binary_cache_dir=str(cache))

        env = runner.build_env(str(tmp_path), {"name": "Playwright"}, "postinstall")
        plain = runner.build_env(str(tmp_path), {"name": "left-pad"}, "postinstall")

        assert env["PLAYWRIGHT_BROWSERS_PATH"] == str(cache / "playwright")
        assert env["PUPPETEER_CACHE_DIR"] == str(cache / "puppeteer")
        assert env["ELECTRON_CACHE"] == str(cache / "electron")
        assert "PLAYWRIGHT_BROWSERS_PATH" not in plain

    def test_binary_package_script_sees_cache_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PUPPETEER_CACHE_DIR", raising=False)
        cache = tmp_path / "binaries"
        manifest = {"name": "puppeteer", "scripts": {"postinstall": 'echo "$PUPPETEER_CACHE_DIR" > cache.txt'}}

        asyncio.run(LifecycleRunner(binary_cache_dir=str(cache)).run_all("puppeteer", str(tmp_path), manifest))

        assert (tmp_path / "cache.txt").read_text().strip() == str(cache / "puppeteer")
        assert cache.is_dir()

    def test_no_scripts(self, tmp_path):
        assert asyncio.run(LifecycleRunner().run_all("a", str(tmp_path), {})) == []


class TestInstallExecutor:
    """Graph installation through the store."""

    def test_failed_script_marks_package_skipped(self, registry, config, tmp_path):
        registry.publish("a", "1.0.0", scripts={"postinstall": "echo ok > marker"})
        registry.publish("b", "1.0.0", scripts={"postinstall": "exit 1"})
        graph = _resolve(registry, config, {"a": "^1.0.0", "b": "^1.0.0"})
        project = tmp_path / "project"

        stats = asyncio.run(_executor(registry, config).install_tree(graph, str(project)))

        assert stats.as_dict() == {"installed": 1, "skipped": 1, "total": 2}
        assert (project / "node_modules" / "a" / "marker").exists()
        [failure] = stats.script_failures
        assert failure.package == "b"
        assert failure.exit_code == 1

    def test_spawn_error_marks_package_skipped(self, registry, config, tmp_path):
        registry.publish("a", "1.0.0")
        registry.publish("b", "1.0.0", scripts={"postinstall": "node build.js"})
        graph = _resolve(registry, config, {"a": "^1.0.0", "b": "^1.0.0"})

        with patch("installer.lifecycle.asyncio.create_subprocess_shell", side_effect=OSError("no shell")):
            stats = asyncio.run(_executor(registry, config).install_tree(graph, str(tmp_path / "project")))

        assert stats.as_dict() == {"installed": 1, "skipped": 1, "total": 2}
        [failure] = stats.script_failures
        assert failure.package == "b"
        assert failure.error == "no shell"
        assert not failure.ok

    def test_binary_package_scripts_use_configured_cache(self, registry, config, tmp_path, monkeypatch):
        monkeypatch.delenv("ELECTRON_CACHE", raising=False)
        registry.publish("electron", "30.0.0", scripts={"postinstall": 'echo "$ELECTRON_CACHE" > cache.txt'})
        configured = replace(config, binary_cache_dir=str(tmp_path / "binaries"))
        graph = _resolve(registry, configured, {"electron": "^30.0.0"})
        project = tmp_path / "project"

        asyncio.run(_executor(registry, configured).install_tree(graph, str(project)))

        written = (project / "node_modules" / "electron" / "cache.txt").read_text().strip()
        assert written == str(tmp_path / "binaries" / "electron")

    def test_reinstall_skips_up_to_date_packages(self, registry, config, tmp_path):
        registry.publish("a", "1.0.0")
        graph = _resolve(registry, config, {"a": "^1.0.0"})
        executor = _executor(registry, config)
        project = str(tmp_path / "project")

        asyncio.run(executor.install_tree(graph, project))
        stats = asyncio.run(executor.install_tree(graph, project))

        assert stats.installed == 0
        assert stats.skipped == 1
        assert sum(registry.downloads.values()) == 1

    def test_symlink_mode(self, registry, config, tmp_path):
        registry.publish("@scope/pkg", "1.0.0")
        graph = _resolve(registry, config, {"@scope/pkg": "^1.0.0"})
        project = str(tmp_path / "project")

        stats = asyncio.run(_executor(registry, config).install_tree(graph, project, use_symlinks=True))

        target = module_path(os.path.join(project, "node_modules"), "@scope/pkg")
        assert target.endswith(os.path.join("node_modules", "@scope", "pkg"))
        assert os.path.islink(target)
        assert stats.symlinked == 1
        with open(os.path.join(target, "package.json"), encoding="utf-8") as fh:
            assert json.load(fh)["version"] == "1.0.0"

    def test_local_dependency_is_copied(self, registry, config, tmp_path):
        project = tmp_path / "project"
        lib = project / "lib"
        lib.mkdir(parents=True)
        (lib / "package.json").write_text(json.dumps({"name": "lib", "version": "0.1.0"}))
        graph = _resolve(registry, config, {"lib": "file:./lib"})

        stats = asyncio.run(_executor(registry, config).install_tree(graph, str(project)))

        assert stats.installed == 1
        assert (project / "node_modules" / "lib" / "package.json").exists()
        assert not os.path.islink(project / "node_modules" / "lib")

    def test_vcs_dependency_without_archive_is_skipped(self, registry, config, tmp_path):
        graph = _resolve(registry, config, {"r": "git+ssh://git@example.com/r.git"})

        stats = asyncio.run(_executor(registry, config).install_tree(graph, str(tmp_path / "p")))

        assert stats.skipped == 1
        assert "Skipping r" in stats.warnings[0]

    def test_alias_installs_under_alias_name(self, registry, config, tmp_path):
        registry.publish("lodash", "4.17.21")
        graph = _resolve(registry, config, {"my-lodash": "npm:lodash@^4.0.0"})
        project = tmp_path / "project"

        asyncio.run(_executor(registry, config).install_tree(graph, str(project)))

        assert (project / "node_modules" / "my-lodash" / "package.json").exists()
        assert (project / "node_modules" / "lodash" / "package.json").exists()

    def test_tampered_archive_aborts_install(self, registry, config, tmp_path, tarball):
        entry = registry.publish("a", "1.0.0")
        graph = _resolve(registry, config, {"a": "^1.0.0"})
        registry.archives[entry["dist"]["tarball"]] = tarball({"package.json": "{}", "evil.js": "x"})

        with pytest.raises(IntegrityError):
            asyncio.run(_executor(registry, config).install_tree(graph, str(tmp_path / "project")))
        assert not (tmp_path / "project" / "node_modules" / "a").exists()
