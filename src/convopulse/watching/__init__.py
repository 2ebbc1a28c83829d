"""Polling change detection for conversation logs."""

from convopulse.watching.watcher import (
    FileActivity,
    FileChangeEvent,
    FileWatcher,
    WatchedFile,
    diff_snapshots,
    scan_tree,
)

__all__ = [
    "FileActivity",
    "FileChangeEvent",
    "FileWatcher",
    "WatchedFile",
    "diff_snapshots",
    "scan_tree",
]
