"""Caching layer: mtime-validated file cache with dependency tracking."""

from convopulse.cache.data_cache import CacheEntry, CacheStats, DataCache
from convopulse.cache.graph import DependencyGraph, normalize_path

__all__ = [
    "CacheEntry",
    "CacheStats",
    "DataCache",
    "DependencyGraph",
    "normalize_path",
]
