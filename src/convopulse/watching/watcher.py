"""Change detection over the conversation root, using polling.

Polling is preferred over native file watchers for cross-platform
reliability. A single scheduler task ticks at a short interval and fires
whatever is due in its deadline map: the next poll, per-conversation typing
checks and the periodic safety-net refreshes.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from convopulse.analysis.conversation import CONVERSATION_SUFFIX, conversation_id_for
from convopulse.analysis.messages import read_tail_messages
from convopulse.analysis.state import ConversationState
from convopulse.config.schema import WatcherConfig
from convopulse.logging import get_logger

if TYPE_CHECKING:
    from convopulse.cache import DataCache

log = get_logger("watching")

Callback = Callable[..., Any]

POLL = "poll"
DATA_REFRESH = "refresh:data"
PROCESS_REFRESH = "refresh:process"
TYPING_PREFIX = "typing:"


@dataclass
class WatchedFile:
    """Last observed state of a path."""

    path: str
    mtime: float
    size: int
    is_dir: bool = False
    conversation: bool = False


@dataclass
class FileChangeEvent:
    """A detected change to a watched path."""

    path: str
    change_type: str  # "created", "modified", "deleted"
    is_dir: bool
    conversation: bool
    old_mtime: float | None
    new_mtime: float | None
    size: int | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "changeType": self.change_type,
            "isDir": self.is_dir,
            "oldMtime": self.old_mtime,
            "newMtime": self.new_mtime,
            "timestamp": self.timestamp,
        }


@dataclass
class FileActivity:
    """Write activity of one conversation, for typing detection."""

    last_size: int = 0
    last_mtime: float = 0.0
    last_check: float = float("-inf")


@dataclass
class _Deadline:
    when: float
    action: Callable[[], Awaitable[None]]
    interval: float | None = None


def scan_tree(root: str, project_depth: int) -> dict[str, WatchedFile]:
    """Snapshot of every conversation log, plus entries near the root (blocking).

    Conversation logs are tracked at any depth. Directories and other files
    are tracked only within ``project_depth`` levels of the root.
    """
    snapshot: dict[str, WatchedFile] = {}
    root = os.path.normpath(root)
    base_depth = root.count(os.sep)

    for dirpath, dirnames, filenames in os.walk(root):
        depth = dirpath.count(os.sep) - base_depth
        if depth < project_depth:
            for name in dirnames:
                full = os.path.join(dirpath, name)
                try:
                    st = os.stat(full)
                except OSError:
                    continue
                snapshot[full] = WatchedFile(full, st.st_mtime, 0, is_dir=True)
        for name in filenames:
            is_log = name.endswith(CONVERSATION_SUFFIX)
            if not is_log and depth >= project_depth:
                continue
            full = os.path.join(dirpath, name)
            try:
                st = os.stat(full)
            except OSError:
                continue
            snapshot[full] = WatchedFile(full, st.st_mtime, st.st_size, conversation=is_log)
    return snapshot


def diff_snapshots(old: dict[str, WatchedFile], new: dict[str, WatchedFile]) -> list[FileChangeEvent]:
    events: list[FileChangeEvent] = []
    for path, current in new.items():
        previous = old.get(path)
        if previous is None:
            events.append(FileChangeEvent(
                path, "created", current.is_dir, current.conversation, None, current.mtime, current.size
            ))
        elif not current.is_dir and (current.mtime != previous.mtime or current.size != previous.size):
            events.append(FileChangeEvent(
                path, "modified", False, current.conversation, previous.mtime, current.mtime, current.size
            ))
    for path, previous in old.items():
        if path not in new:
            events.append(FileChangeEvent(
                path, "deleted", previous.is_dir, previous.conversation, previous.mtime, None
            ))
    return events


class FileWatcher:
    """Watches the conversation root and drives refreshes.

    Example:
        watcher = FileWatcher(config.watcher, notifier=notifications)
        await watcher.setup_file_watchers(root, refresh_data, refresh_processes, cache=cache)
        ...
        watcher.stop()
    """

    def __init__(
        self,
        config: WatcherConfig | None = None,
        notifier: Any = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.config = config or WatcherConfig()
        self._notifier = notifier
        self._clock = clock
        self._wall_clock = wall_clock

        self._root: str | None = None
        self._on_data_refresh: Callback | None = None
        self._on_process_refresh: Callback | None = None
        self._on_conversation_change: Callback | None = None
        self._cache: DataCache | None = None

        self._snapshot: dict[str, WatchedFile] = {}
        self._activity: dict[str, FileActivity] = {}
        self._deadlines: dict[str, _Deadline] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._scheduler: asyncio.Task[None] | None = None

        self._active = False
        self._paused = False
        self._polling = False
        self._refreshing = False
        self._refresh_pending = False

    # -- lifecycle -----------------------------------------------------------

    async def setup_file_watchers(
        self,
        root_dir: str | os.PathLike[str],
        on_data_refresh: Callback,
        on_process_refresh: Callback,
        cache: DataCache | None = None,
        on_conversation_change: Callback | None = None,
    ) -> None:
        """Take the initial snapshot and start the scheduler."""
        if self._active:
            log.warning("FileWatcher already running")
            return

        self._root = os.path.normpath(os.fspath(root_dir))
        self._on_data_refresh = on_data_refresh
        self._on_process_refresh = on_process_refresh
        self._cache = cache
        self._on_conversation_change = on_conversation_change
        await self._start()

    async def _start(self) -> None:
        assert self._root is not None
        if os.path.isdir(self._root):
            self._snapshot = await asyncio.to_thread(scan_tree, self._root, self.config.project_depth)
        else:
            log.warning("Watch root %s does not exist yet", self._root)
            self._snapshot = {}

        now = self._clock()
        self._deadlines = {
            POLL: _Deadline(now + self.config.poll_interval, self._poll, self.config.poll_interval),
            DATA_REFRESH: _Deadline(
                now + self.config.data_refresh_interval,
                self.trigger_data_refresh,
                self.config.data_refresh_interval,
            ),
            PROCESS_REFRESH: _Deadline(
                now + self.config.process_refresh_interval,
                self.trigger_process_refresh,
                self.config.process_refresh_interval,
            ),
        }
        self._active = True
        self._paused = False
        self._scheduler = asyncio.create_task(self._run())
        log.info(
            "Watching %s (%d paths, poll %.1fs)",
            self._root,
            len(self._snapshot),
            self.config.poll_interval,
        )

    def _teardown(self) -> None:
        self._active = False
        if self._scheduler is not None:
            self._scheduler.cancel()
            self._scheduler = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._deadlines.clear()
        self._activity.clear()
        self._polling = False
        self._refreshing = False
        self._refresh_pending = False

    def stop(self) -> None:
        """Stop watching. No callback fires after this returns."""
        self._teardown()
        self._snapshot.clear()
        self._paused = False
        log.info("FileWatcher stopped")

    def pause(self) -> None:
        """Suspend watching, keeping the callbacks for ``resume``."""
        if not self._active:
            return
        self._teardown()
        self._paused = True
        log.info("FileWatcher paused")

    async def resume(self) -> None:
        if not self._paused or self._root is None:
            return
        await self._start()
        log.info("FileWatcher resumed")

    def is_watching(self) -> bool:
        return self._active

    def set_notifier(self, notifier: Any) -> None:
        self._notifier = notifier

    def get_watched_paths(self) -> list[str]:
        return sorted(self._snapshot)

    @staticmethod
    def extract_conversation_id(path: str) -> str:
        return conversation_id_for(path)

    def get_status(self) -> dict[str, Any]:
        return {
            "isActive": self._active,
            "isPaused": self._paused,
            "rootDir": self._root,
            "watchedFiles": sum(1 for w in self._snapshot.values() if not w.is_dir),
            "watchedDirectories": sum(1 for w in self._snapshot.values() if w.is_dir),
            "conversationFiles": sum(1 for w in self._snapshot.values() if w.conversation),
            "pendingTypingChecks": sum(1 for k in self._deadlines if k.startswith(TYPING_PREFIX)),
            "trackedConversations": len(self._activity),
            "intervals": {
                "poll": self.config.poll_interval,
                "dataRefresh": self.config.data_refresh_interval,
                "processRefresh": self.config.process_refresh_interval,
            },
        }

    # -- scheduler -------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while self._active:
                self.fire_due()
                await asyncio.sleep(self.config.tick_interval)
        except asyncio.CancelledError:
            log.debug("Scheduler cancelled")

    def fire_due(self) -> int:
        """Start every action whose deadline has passed. Returns how many."""
        now = self._clock()
        fired = 0
        for key, deadline in list(self._deadlines.items()):
            if not self._active:
                break
            if deadline.when > now:
                continue
            if deadline.interval is not None:
                deadline.when = now + deadline.interval
            else:
                del self._deadlines[key]
            self._spawn(deadline.action())
            fired += 1
        return fired

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log.error("Watcher task failed: %s", t.exception())

        task.add_done_callback(_done)

    async def _invoke(self, label: str, callback: Callback | None, *args: Any) -> None:
        if callback is None or not self._active:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Error in %s callback", label)

    # -- polling ---------------------------------------------------------------

    async def _poll(self) -> None:
        if self._polling or self._root is None:
            return
        self._polling = True
        try:
            if not os.path.isdir(self._root):
                current: dict[str, WatchedFile] = {}
            else:
                current = await asyncio.to_thread(scan_tree, self._root, self.config.project_depth)
            if not self._active:
                return
            events = diff_snapshots(self._snapshot, current)
            self._snapshot = current
        except OSError as e:
            log.warning("Polling %s failed: %s", self._root, e)
            return
        finally:
            self._polling = False

        if events:
            await self.dispatch(events)

    async def dispatch(self, events: list[FileChangeEvent]) -> None:
        """Route change events; conversations first so invalidation precedes refresh."""
        refresh = False
        for event in events:
            if not self._active:
                return
            if event.conversation:
                self._handle_conversation_event(event)
                conversation_id = conversation_id_for(event.path)
                await self._invoke("conversation change", self._on_conversation_change, conversation_id, event.path)
                refresh = True
            elif event.is_dir and event.change_type == "created":
                log.debug("New directory %s", event.path)
                refresh = True
            elif event.change_type != "created":
                refresh = True
        if refresh:
            await self.trigger_data_refresh()

    def _handle_conversation_event(self, event: FileChangeEvent) -> None:
        conversation_id = conversation_id_for(event.path)
        if event.change_type == "deleted":
            self._activity.pop(conversation_id, None)
            self._deadlines.pop(TYPING_PREFIX + conversation_id, None)
        else:
            self.handle_file_activity(conversation_id, event.path, event.size or 0, event.new_mtime or 0.0)
        if self._cache is not None:
            self._cache.invalidate_file(event.path)

    # -- typing detection --------------------------------------------------------

    def handle_file_activity(self, conversation_id: str, path: str, size: int, mtime: float) -> None:
        """Arm a debounced typing check when a log keeps growing."""
        now = self._clock()
        activity = self._activity.setdefault(conversation_id, FileActivity())
        changed = size != activity.last_size or mtime > activity.last_mtime
        if changed and now - activity.last_check > self.config.typing_check_interval:
            self._deadlines[TYPING_PREFIX + conversation_id] = _Deadline(
                now + self.config.typing_debounce,
                lambda: self.check_typing_activity(conversation_id, path),
            )
            activity.last_check = now
        activity.last_size = size
        activity.last_mtime = mtime

    async def check_typing_activity(self, conversation_id: str, path: str) -> None:
        """Report ``User typing...`` when the newest message is an old assistant turn."""
        try:
            messages = await asyncio.to_thread(read_tail_messages, path)
        except OSError as e:
            log.debug("Typing check skipped for %s: %s", conversation_id, e)
            return
        if not messages or not self._active:
            return

        newest = max(messages, key=lambda m: m.timestamp)
        now = self._wall_clock()
        age = (now - newest.timestamp).total_seconds()
        if newest.role != "assistant" or age <= self.config.typing_message_age:
            return

        notify = getattr(self._notifier, "notify_conversation_state_change", None)
        await self._invoke(
            "typing notification",
            notify,
            conversation_id,
            ConversationState.TYPING.value,
            {"detectionMethod": "file_activity", "timestamp": now.isoformat()},
        )

    # -- refreshes -----------------------------------------------------------------

    async def trigger_data_refresh(self) -> None:
        """Run the data refresh; triggers arriving meanwhile coalesce into one rerun."""
        if self._refreshing:
            self._refresh_pending = True
            return
        self._refreshing = True
        try:
            while True:
                self._refresh_pending = False
                await self._invoke("data refresh", self._on_data_refresh)
                if not self._refresh_pending or not self._active:
                    break
        finally:
            self._refreshing = False

    async def trigger_process_refresh(self) -> None:
        await self._invoke("process refresh", self._on_process_refresh)

    async def force_refresh(self) -> None:
        await self.trigger_data_refresh()
        await self.trigger_process_refresh()
