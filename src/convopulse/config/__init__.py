"""Configuration management for convopulse.

Provides layered YAML-based configuration with:
- System-level config (/etc/convopulse/ or %PROGRAMDATA%)
- User-level config (~/.config/convopulse/, ~/.convopulse/ or %APPDATA%)
- Project-level config (<root_dir>/.convopulse/)
- Environment variable overrides (highest priority)

Example usage:
    from convopulse.config import load_config

    config = load_config(root_dir="~/.claude")
    print(config.cache.parsed_data_ttl)
"""

from convopulse.config.loader import dict_to_config, load_config
from convopulse.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
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

__all__ = [
    "Config",
    "load_config",
    "dict_to_config",
    # Schema types
    "CacheConfig",
    "LoggingConfig",
    "NotificationConfig",
    "PathsConfig",
    "ServerConfig",
    "SessionConfig",
    "WatcherConfig",
    "WebSocketConfig",
    # Path utilities
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
