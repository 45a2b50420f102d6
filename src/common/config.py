"""Runtime configuration for the install core.

Precedence, highest first: explicit overrides, environment variables, the
YAML config file, built-in ``Constants`` defaults. Bad values never raise;
they are logged and the lower-precedence value is kept.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

from constants import Constants, _load_yaml_config

logger = logging.getLogger(__name__)

_ENV_KEYS = {
    "store_dir": (Constants.ENV_STORE_DIR,),
    "cache_dir": (Constants.ENV_CACHE_DIR,),
    "binary_cache_dir": (Constants.ENV_BINARY_CACHE_DIR,),
    "registry_url": (Constants.ENV_REGISTRY, Constants.ENV_NPM_REGISTRY),
    "concurrency": (Constants.ENV_CONCURRENCY,),
}


@dataclass(frozen=True)
class CoreConfig:
    """Paths and tunables injected into the store, resolver and installer."""

    registry_url: str = Constants.REGISTRY_URL_NPM
    store_dir: str = Constants.STORE_DIR
    cache_dir: str = Constants.CACHE_DIR
    binary_cache_dir: str = Constants.BINARY_CACHE_DIR
    concurrency: int = Constants.MAX_CONCURRENCY
    request_timeout: int = Constants.REQUEST_TIMEOUT
    lock_timeout: float = Constants.LOCK_TIMEOUT_SEC
    alias_max_depth: int = Constants.ALIAS_MAX_DEPTH
    lockfile_name: str = Constants.LOCKFILE_NAME
    script_env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["CoreConfig"] = None) -> "CoreConfig":
        """Overlay known keys from ``data`` onto ``base`` (or the defaults).

        Args:
            data: Mapping such as the ``core`` section of the YAML config.
            base: Config to start from.

        Returns:
            CoreConfig: A new config instance.
        """
        config = base or cls()
        updates: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            value = _coerce(f.name, data[f.name], getattr(config, f.name))
            if value is not None:
                updates[f.name] = value
        return replace(config, **updates) if updates else config

    @classmethod
    def load(cls, project_dir: Optional[str] = None, **overrides: Any) -> "CoreConfig":
        """Build a config from YAML, environment and explicit overrides."""
        raw = _load_yaml_config(project_dir)
        section = raw.get("core", raw) if isinstance(raw, dict) else {}
        config = cls.from_mapping(section if isinstance(section, dict) else {})

        env_values: Dict[str, Any] = {}
        for key, names in _ENV_KEYS.items():
            for name in names:
                value = os.environ.get(name)
                if value:
                    env_values[key] = value
                    break
        config = cls.from_mapping(env_values, base=config)
        return cls.from_mapping(overrides, base=config)

    @property
    def registry_base(self) -> str:
        """Registry URL guaranteed to end with a slash."""
        return self.registry_url if self.registry_url.endswith("/") else self.registry_url + "/"


def _coerce(name: str, value: Any, current: Any) -> Any:
    """Convert ``value`` to the type of ``current``; None when invalid."""
    if isinstance(current, dict):
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        logger.warning("Ignoring config %s: expected a mapping", name)
        return None
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, (int, float)):
        try:
            number = type(current)(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring config %s=%r: not a number", name, value)
            return None
        if number <= 0:
            logger.warning("Ignoring config %s=%r: must be positive", name, value)
            return None
        return number
    text = str(value).strip()
    if name.endswith("_dir"):
        text = os.path.expanduser(text)
    return text or None
