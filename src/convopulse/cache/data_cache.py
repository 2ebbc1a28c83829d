"""Multi-level cache for conversation files and everything derived from them.

Entries are validated against file modification times, so a cached value is
reused for as long as its source file has not been written since. Aggregates
built from many files record the mtime of each dependency and are rebuilt
when any of them moves (or their TTL lapses).

All bookkeeping happens on the event loop. Blocking reads and parsing run on
a bounded thread pool, and identical concurrent misses share one in-flight
task.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import inspect
import os
import time
from collections.abc import Awaitable, Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from convopulse.analysis.messages import Message, parse_conversation_text
from convopulse.cache.graph import DependencyGraph, normalize_path
from convopulse.config.schema import CacheConfig
from convopulse.logging import get_logger

log = get_logger("cache")

T = TypeVar("T")

# Namespaces
FILE_CONTENT = "fileContent"
FILE_STATS = "fileStats"
PARSED = "parsedConversations"
TOKEN_USAGE = "tokenUsage"
MODEL_INFO = "modelInfo"
STATUS_SQUARES = "statusSquares"
TOOL_USAGE = "toolUsage"
COMPUTATION = "computations"

NAMESPACES = (
    FILE_CONTENT,
    FILE_STATS,
    PARSED,
    TOKEN_USAGE,
    MODEL_INFO,
    STATUS_SQUARES,
    TOOL_USAGE,
    COMPUTATION,
)

# Recorded mtime of an aggregate dependency that did not exist at build time
MISSING = -1.0

CacheKey = tuple[str, str]


@dataclass
class CacheEntry:
    """One cached value.

    ``timestamp`` is the source file's mtime for file-derived entries and the
    wall-clock write time otherwise. ``dependencies`` maps each source path to
    the mtime observed when the value was built.
    """

    value: Any
    timestamp: float
    stored_at: float
    dependencies: dict[str, float] = field(default_factory=dict)
    ttl_class: str = PARSED


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    invalidations: int = 0
    files_invalidated: int = 0
    computations_invalidated: int = 0
    evictions: int = 0
    joins: int = 0  # Callers that awaited another caller's in-flight miss

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


async def _resolve(value: T | Awaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as f:
        return f.read()


class DataCache:
    """mtime-validated cache with dependency-aware invalidation.

    Example:
        cache = DataCache(CacheConfig())
        cache.start()
        messages = await cache.get_parsed_conversation(path)
        usage = await cache.get_cached_token_usage(path, lambda: compute(messages))
        cache.invalidate_file(path)  # after the watcher sees a write
        await cache.close()
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        executor: ThreadPoolExecutor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="convopulse-io"
        )

        self._entries: dict[CacheKey, CacheEntry] = {}
        self._graph = DependencyGraph()
        self._inflight: dict[CacheKey, asyncio.Future[Any]] = {}
        self._inflight_paths: dict[CacheKey, frozenset[str]] = {}
        self._generations: dict[str, int] = {}
        self._stats = CacheStats()
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def executor(self) -> ThreadPoolExecutor:
        return self._executor

    async def run_blocking(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking callable on the cache's I/O pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the periodic TTL sweep."""
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            try:
                self.evict_old_entries()
                self.enforce_size_limits()
            except Exception:
                log.exception("Cache sweep failed")

    async def close(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        for future in self._inflight.values():
            future.cancel()
        self._inflight.clear()
        self._inflight_paths.clear()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def configure(self, **options: Any) -> None:
        """Replace TTLs or limits, e.g. ``configure(parsed_data_ttl=5)``."""
        self._config = dataclasses.replace(self._config, **options)

    # -- internals ---------------------------------------------------------

    def _ttl(self, ttl_class: str) -> float:
        if ttl_class == FILE_CONTENT:
            return self._config.file_content_ttl
        if ttl_class == FILE_STATS:
            return self._config.metadata_ttl
        if ttl_class == COMPUTATION:
            return self._config.computation_ttl
        return self._config.parsed_data_ttl

    def _generation(self, path: str) -> int:
        return self._generations.get(path, 0)

    def _store(self, key: CacheKey, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._graph.add(key, entry.dependencies)

    def _drop(self, key: CacheKey) -> bool:
        self._graph.remove(key)
        return self._entries.pop(key, None) is not None

    async def _single_flight(
        self, key: CacheKey, paths: Iterable[str], produce: Callable[[], Awaitable[T]]
    ) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            self._stats.joins += 1
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(produce())
        self._inflight[key] = task
        self._inflight_paths[key] = frozenset(paths)

        def _forget(done: asyncio.Future[Any]) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]
                self._inflight_paths.pop(key, None)

        task.add_done_callback(_forget)
        return await asyncio.shield(task)

    # -- file metadata and content -----------------------------------------

    async def get_file_stats(self, path: str | os.PathLike[str]) -> os.stat_result:
        """``os.stat`` of a file, reused for the metadata TTL.

        A failed stat drops everything cached for the path and re-raises.
        """
        return await self._stat(normalize_path(path), invalidate_on_error=True)

    async def _stat(self, p: str, invalidate_on_error: bool) -> os.stat_result:
        key = (FILE_STATS, p)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and now - entry.stored_at < self._config.metadata_ttl:
            self._stats.hits += 1
            return entry.value

        self._stats.misses += 1
        try:
            stats = await self.run_blocking(os.stat, p)
        except OSError:
            if invalidate_on_error:
                self.invalidate_file(p)
            raise
        self._store(key, CacheEntry(stats, now, now, {p: stats.st_mtime}, FILE_STATS))
        return stats

    async def _file_mtime(self, path: str) -> float:
        return (await self._stat(path, invalidate_on_error=True)).st_mtime

    async def _dependency_mtime(self, path: str) -> float:
        # Aggregates may depend on optional files; a missing one is not an error
        return (await self._stat(path, invalidate_on_error=False)).st_mtime

    async def get_file_content(self, path: str | os.PathLike[str]) -> str:
        """File text, re-read only when the file's mtime moved past the cached copy."""
        p = normalize_path(path)
        key = (FILE_CONTENT, p)
        stats = await self.get_file_stats(p)
        entry = self._entries.get(key)
        if entry is not None and entry.timestamp >= stats.st_mtime:
            self._stats.hits += 1
            return entry.value

        self._stats.misses += 1
        generation = self._generation(p)

        async def produce() -> str:
            try:
                content = await self.run_blocking(_read_text, p)
            except OSError:
                self.invalidate_file(p)
                raise
            if self._generation(p) == generation and stats.st_size <= self._config.max_file_size:
                now = self._clock()
                self._store(key, CacheEntry(content, stats.st_mtime, now, {p: stats.st_mtime}, FILE_CONTENT))
            return content

        return await self._single_flight(key, (p,), produce)

    async def get_parsed_conversation(self, path: str | os.PathLike[str]) -> list[Message]:
        """Messages of a conversation log, parsed once per file version."""
        p = normalize_path(path)
        key = (PARSED, p)
        mtime = await self._file_mtime(p)
        entry = self._entries.get(key)
        if entry is not None and entry.timestamp >= mtime:
            self._stats.hits += 1
            return entry.value

        self._stats.misses += 1
        generation = self._generation(p)

        async def produce() -> list[Message]:
            content = await self.get_file_content(p)
            messages = await self.run_blocking(parse_conversation_text, content)
            if self._generation(p) == generation:
                self._store(key, CacheEntry(messages, mtime, self._clock(), {p: mtime}, PARSED))
            return messages

        return await self._single_flight(key, (p,), produce)

    # -- per-file derived values -------------------------------------------

    async def _get_derived(
        self, namespace: str, path: str | os.PathLike[str], compute: Callable[[], T | Awaitable[T]]
    ) -> T:
        p = normalize_path(path)
        key = (namespace, p)
        mtime = await self._file_mtime(p)
        entry = self._entries.get(key)
        if entry is not None and entry.timestamp >= mtime:
            self._stats.hits += 1
            return entry.value

        self._stats.misses += 1
        generation = self._generation(p)

        async def produce() -> T:
            value = await _resolve(compute())
            if self._generation(p) == generation:
                self._store(key, CacheEntry(value, mtime, self._clock(), {p: mtime}, namespace))
            return value

        return await self._single_flight(key, (p,), produce)

    async def get_cached_token_usage(self, path: str | os.PathLike[str], compute: Callable[[], Any]) -> Any:
        return await self._get_derived(TOKEN_USAGE, path, compute)

    async def get_cached_model_info(self, path: str | os.PathLike[str], compute: Callable[[], Any]) -> Any:
        return await self._get_derived(MODEL_INFO, path, compute)

    async def get_cached_status_squares(self, path: str | os.PathLike[str], compute: Callable[[], Any]) -> Any:
        return await self._get_derived(STATUS_SQUARES, path, compute)

    async def get_cached_tool_usage(self, path: str | os.PathLike[str], compute: Callable[[], Any]) -> Any:
        return await self._get_derived(TOOL_USAGE, path, compute)

    # -- aggregates ----------------------------------------------------------

    async def _computation_valid(self, entry: CacheEntry, ttl: float) -> bool:
        if self._clock() - entry.stored_at >= ttl:
            return False
        for dep_path, recorded in entry.dependencies.items():
            try:
                if await self._dependency_mtime(dep_path) > recorded:
                    return False
            except OSError:
                if recorded != MISSING:
                    return False
        return True

    async def get_cached_computation(
        self,
        key: str,
        compute: Callable[[], T | Awaitable[T]],
        dependency_paths: Iterable[str | os.PathLike[str]],
        ttl: float | None = None,
    ) -> T:
        """Aggregate value rebuilt when any dependency changes or the TTL lapses.

        Args:
            key: Name of the aggregate (e.g. ``"summary"``).
            compute: Zero-argument callable, sync or async.
            dependency_paths: Files the value was derived from.
            ttl: Override of the computation TTL, in seconds.
        """
        ttl = self._config.computation_ttl if ttl is None else ttl
        paths = [normalize_path(p) for p in dependency_paths]
        cache_key = (COMPUTATION, key)

        entry = self._entries.get(cache_key)
        if entry is not None and await self._computation_valid(entry, ttl):
            self._stats.hits += 1
            return entry.value

        self._stats.misses += 1

        async def produce() -> T:
            # Record dependency versions before computing, so a write racing
            # the computation makes the stored value stale rather than lost.
            dependencies: dict[str, float] = {}
            for p in paths:
                try:
                    dependencies[p] = await self._dependency_mtime(p)
                except OSError:
                    log.debug("Dependency %s missing while computing %s", p, key)
                    dependencies[p] = MISSING
            generations = {p: self._generation(p) for p in paths}
            value = await _resolve(compute())
            if all(self._generation(p) == g for p, g in generations.items()):
                self._store(cache_key, CacheEntry(value, self._clock(), self._clock(), dependencies, COMPUTATION))
            return value

        return await self._single_flight(cache_key, paths, produce)

    # -- invalidation --------------------------------------------------------

    def invalidate_file(self, path: str | os.PathLike[str]) -> None:
        """Drop every entry built from ``path``, per-file and aggregate alike."""
        p = normalize_path(path)
        self._generations[p] = self._generation(p) + 1

        dropped_computations = 0
        for key in self._graph.dependents(p):
            if self._drop(key) and key[0] == COMPUTATION:
                dropped_computations += 1

        for key, paths in list(self._inflight_paths.items()):
            if p in paths:
                self._inflight.pop(key, None)
                del self._inflight_paths[key]

        self._stats.invalidations += 1
        self._stats.files_invalidated += 1
        self._stats.computations_invalidated += dropped_computations
        log.debug("Invalidated %s (%d aggregates)", p, dropped_computations)

    def invalidate_files(self, paths: Iterable[str | os.PathLike[str]]) -> None:
        for path in paths:
            self.invalidate_file(path)

    def invalidate_computations(self) -> None:
        keys = [k for k in self._entries if k[0] == COMPUTATION]
        for key in keys:
            self._drop(key)
        self._stats.invalidations += 1
        self._stats.computations_invalidated += len(keys)

    def evict_old_entries(self) -> int:
        """Drop entries older than their TTL class. Returns the count."""
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items() if now - entry.stored_at > self._ttl(entry.ttl_class)
        ]
        for key in expired:
            self._drop(key)
        self._stats.evictions += len(expired)
        if expired:
            log.debug("Evicted %d expired cache entries", len(expired))
        return len(expired)

    def enforce_size_limits(self) -> int:
        """Trim each namespace to ``max_entries``, oldest first."""
        limit = self._config.max_entries
        removed = 0
        for namespace in NAMESPACES:
            keys = [k for k in self._entries if k[0] == namespace]
            excess = len(keys) - limit
            if excess <= 0:
                continue
            keys.sort(key=lambda k: self._entries[k].stored_at)
            for key in keys[:excess]:
                self._drop(key)
            removed += excess
        self._stats.evictions += removed
        return removed

    def clear_all(self) -> None:
        self._entries.clear()
        self._graph.clear()
        self._inflight.clear()
        self._inflight_paths.clear()
        self._generations.clear()
        self._stats.invalidations += 1

    # -- introspection -------------------------------------------------------

    def namespace_size(self, namespace: str) -> int:
        return sum(1 for k in self._entries if k[0] == namespace)

    def get_stats(self) -> dict[str, Any]:
        sizes = dict.fromkeys(NAMESPACES, 0)
        for namespace, _ in self._entries:
            sizes[namespace] += 1
        return {
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "invalidations": self._stats.invalidations,
            "filesInvalidated": self._stats.files_invalidated,
            "computationsInvalidated": self._stats.computations_invalidated,
            "evictions": self._stats.evictions,
            "joins": self._stats.joins,
            "hitRate": f"{self._stats.hit_rate * 100:.2f}%",
            "cacheSizes": sizes,
            "dependencyTracking": len(self._graph),
        }

    def needs_warming(self) -> bool:
        """True while the cache has seen little traffic or mostly misses."""
        total = self._stats.hits + self._stats.misses
        return total < 10 or self._stats.hit_rate < 0.5

    @property
    def stats(self) -> CacheStats:
        return self._stats
