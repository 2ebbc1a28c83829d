"""Configuration file loading.

Handles:
- YAML file parsing
- Environment variable overrides
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any, TypeVar

import yaml

from convopulse.config.merge import merge_configs
from convopulse.config.paths import get_config_paths
from convopulse.config.schema import (
    CacheConfig,
    Config,
    LoggingConfig,
    NotificationConfig,
    PathsConfig,
    ServerConfig,
    SessionConfig,
    WatcherConfig,
    WebSocketConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("convopulse.config")

_T = TypeVar("_T")

_SECTIONS: dict[str, type] = {
    "paths": PathsConfig,
    "cache": CacheConfig,
    "watcher": WatcherConfig,
    "websocket": WebSocketConfig,
    "server": ServerConfig,
    "session": SessionConfig,
    "notifications": NotificationConfig,
    "logging": LoggingConfig,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    Recognised: CP_LOG (log file), CP_ROOT (monitored root), CP_PORT.
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("CP_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    root_dir = os.environ.get("CP_ROOT")
    if root_dir:
        overrides.setdefault("paths", {})["root_dir"] = root_dir

    port = os.environ.get("CP_PORT")
    if port:
        try:
            overrides.setdefault("server", {})["port"] = int(port)
        except ValueError:
            _log.warning("Ignoring non-numeric CP_PORT=%r", port)

    return overrides


def _build_section(cls: type[_T], data: Any) -> _T:
    """Instantiate a section dataclass from a dict, dropping unknown keys."""
    if not isinstance(data, dict):
        return cls()
    known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    unknown = set(data) - known
    if unknown:
        _log.debug("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    sections = {name: _build_section(cls, data.get(name)) for name, cls in _SECTIONS.items()}
    extra = {k: v for k, v in data.items() if k not in _SECTIONS}
    return Config(**sections, extra=extra)


def load_config(
    root_dir: str | Path | None = None,
    config_file: str | Path | None = None,
) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Explicit config file (``--config``)
    3. Project config (<root_dir>/.convopulse/config.yaml)
    4. User config
    5. System config

    Every call re-reads the files; callers own the returned object.
    """
    configs: list[dict[str, Any]] = []

    for path in get_config_paths(root_dir):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    if config_file:
        explicit = load_yaml_file(Path(config_file).expanduser())
        if explicit:
            configs.append(explicit)
        else:
            _log.warning("Config file %s is missing or empty", config_file)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    merged = merge_configs(*configs)
    if root_dir and not merged.get("paths", {}).get("root_dir"):
        merged = merge_configs(merged, {"paths": {"root_dir": str(root_dir)}})

    return dict_to_config(merged)
