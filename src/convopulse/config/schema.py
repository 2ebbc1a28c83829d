"""Configuration schema dataclasses for convopulse.

Defines the structure of configuration at all levels (system, user, project).
Every field has a default so partial YAML files merge cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class PathsConfig:
    """Filesystem locations.

    Example config.yaml:
        paths:
          root_dir: ~/.claude
          reports_dir: ~/convopulse-reports
    """

    root_dir: str | None = None  # Default: ~/.claude
    reports_dir: str | None = None  # Default: <root_dir>/analytics-reports
    statsig_dir: str | None = None  # Default: <root_dir>/statsig

    def resolved_root(self) -> Path:
        return Path(self.root_dir or "~/.claude").expanduser()

    def resolved_reports(self) -> Path:
        if self.reports_dir:
            return Path(self.reports_dir).expanduser()
        return self.resolved_root() / "analytics-reports"

    def resolved_statsig(self) -> Path:
        if self.statsig_dir:
            return Path(self.statsig_dir).expanduser()
        return self.resolved_root() / "statsig"


@dataclass
class CacheConfig:
    """DataCache TTLs (seconds) and limits."""

    file_content_ttl: float = 60.0
    parsed_data_ttl: float = 30.0
    computation_ttl: float = 20.0
    metadata_ttl: float = 10.0
    process_ttl: float = 0.5
    max_entries: int = 500  # Per cache namespace
    max_file_size: int = 5 * 1024 * 1024  # Larger content is read but not retained
    sweep_interval: float = 15.0
    max_workers: int = 4  # Thread pool for blocking file I/O


@dataclass
class WatcherConfig:
    """FileWatcher timing.

    Example config.yaml:
        watcher:
          poll_interval: 0.5
          data_refresh_interval: 60
    """

    poll_interval: float = 1.0
    tick_interval: float = 0.25
    typing_debounce: float = 2.0
    typing_check_interval: float = 1.0
    typing_message_age: float = 5.0
    data_refresh_interval: float = 120.0
    process_refresh_interval: float = 30.0
    project_depth: int = 2


@dataclass
class WebSocketConfig:
    """Broadcast channel settings."""

    path: str = "/ws"
    heartbeat_interval: float = 30.0
    max_queue_size: int = 100
    server_name: str = "Claude Code Analytics"


@dataclass
class ServerConfig:
    """HTTP server binding."""

    host: str = "127.0.0.1"
    port: int = 3333


@dataclass
class SessionConfig:
    """Usage-window accounting."""

    window_hours: float = 5.0
    monthly_session_limit: int = 50
    default_plan: str = "standard"
    external_limit_minutes: float = 141.0  # 2h21m, the tool's own session cap
    attach_messages: bool = False  # Keep parsed messages on conversation records


@dataclass
class NotificationConfig:
    """NotificationManager throttling and history."""

    throttle_seconds: float = 1.0
    file_throttle_seconds: float = 2.0
    process_throttle_seconds: float = 5.0
    max_history: int = 1000


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, takes precedence over level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object.

    Merged from all config sources (system, user, project, env).
    """

    paths: PathsConfig = field(default_factory=PathsConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    websocket: WebSocketConfig = field(default_factory=WebSocketConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Unknown top-level keys, kept for extensions
    extra: dict[str, Any] = field(default_factory=dict)
