"""Constants used in the project."""

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional


class LifecycleEvents(Enum):
    """Lifecycle scripts run at install time, in execution order.

    Args:
        Enum (string): Script names as they appear in a package manifest.
    """

    PREINSTALL = "preinstall"
    INSTALL = "install"
    POSTINSTALL = "postinstall"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URL_NPM = "https://registry.npmjs.org/"
    NPM_INSTALL_ACCEPT = (
        "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"
    )
    USER_AGENT = "blaze-core/2.0"

    STORE_DIR = os.path.join(os.path.expanduser("~"), ".blaze_store")
    CACHE_DIR = os.path.join(os.path.expanduser("~"), ".blaze_cache")
    BINARY_CACHE_DIR = os.path.join(os.path.expanduser("~"), ".blaze_binary_cache")

    PACKAGE_JSON_FILE = "package.json"
    LOCKFILE_NAME = "blaze-lock.json"
    LOCKFILE_SCHEMA_VERSION = "2.0.0"
    MODULES_DIR = "node_modules"
    METADATA_CACHE_PREFIX = "metadata-"
    DEFAULT_ARCHIVE_EXT = ".tgz"

    MAX_CONCURRENCY = 8
    ALIAS_MAX_DEPTH = 10
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    DOWNLOAD_CHUNK_SIZE = 64 * 1024
    LOCK_TIMEOUT_SEC = 120.0
    LOCK_POLL_INTERVAL_SEC = 0.05

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "BLAZE_LOG_LEVEL"
    ENV_CONFIG = "BLAZE_CONFIG"
    ENV_REGISTRY = "BLAZE_REGISTRY"
    ENV_NPM_REGISTRY = "npm_config_registry"
    ENV_STORE_DIR = "BLAZE_STORE_DIR"
    ENV_CACHE_DIR = "BLAZE_CACHE_DIR"
    ENV_BINARY_CACHE_DIR = "BLAZE_BINARY_CACHE_DIR"
    ENV_CONCURRENCY = "BLAZE_CONCURRENCY"

    CONFIG_FILE_NAMES = (".blaze.yml", ".blaze.yaml")

    # packages whose install scripts download prebuilt binaries
    BINARY_PACKAGES = frozenset(
        {
            "playwright",
            "@playwright/test",
            "puppeteer",
            "chromium",
            "electron",
            "sharp",
            "canvas",
            "sqlite3",
            "node-gyp",
        }
    )


def _config_candidates(project_dir: Optional[str] = None) -> list:
    """Return config file locations in precedence order."""
    candidates = []
    explicit = os.environ.get(Constants.ENV_CONFIG)
    if explicit:
        candidates.append(explicit)
    base = project_dir or os.getcwd()
    for name in Constants.CONFIG_FILE_NAMES:
        candidates.append(os.path.join(base, name))
    for name in Constants.CONFIG_FILE_NAMES:
        candidates.append(os.path.join(os.path.expanduser("~"), name))
    return candidates


def _load_yaml_config(project_dir: Optional[str] = None) -> Dict[str, Any]:
    """Load the first YAML config file found.

    Looks at ``$BLAZE_CONFIG``, then ``.blaze.yml`` in the project directory,
    then ``~/.blaze.yml``. A file that cannot be parsed is logged and ignored.

    Args:
        project_dir: Directory searched for a project-level config file.

    Returns:
        dict: Parsed mapping, or an empty dict when nothing usable is found.
    """
    import yaml  # pylint: disable=import-outside-toplevel

    for path in _config_candidates(project_dir):
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            logging.getLogger(__name__).warning("Ignoring config %s: %s", path, exc)
            continue
        if isinstance(data, dict):
            return data
        logging.getLogger(__name__).warning("Ignoring config %s: not a mapping", path)
    return {}
