"""Conversation discovery and per-conversation records.

``ConversationAnalyzer`` walks the monitored root for ``*.jsonl`` logs and
turns each into a ``Conversation`` record through the DataCache, so an
unchanged file costs one ``stat`` per refresh.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from convopulse.analysis.messages import Message
from convopulse.analysis.metrics import (
    UNKNOWN,
    ModelInfo,
    StatusSquare,
    TokenUsageSummary,
    ToolUsage,
    calculate_token_usage,
    estimate_tokens,
    extract_model_info,
    extract_tool_usage,
    format_bytes,
    generate_status_squares,
)
from convopulse.analysis.sessions import SESSION_DURATION, TimelineMessage, partition_windows
from convopulse.analysis.state import ConversationState, ConversationStatus, StateCalculator
from convopulse.errors import ConversationNotFoundError
from convopulse.logging import get_logger

if TYPE_CHECKING:
    from convopulse.cache import DataCache

log = get_logger("conversations")

CONVERSATION_SUFFIX = ".jsonl"
SETTINGS_FILENAME = "settings.json"
PROJECT_SCAN_LINES = 10
ACTIVE_PROJECT_AGE = timedelta(hours=1)
RECENT_PROJECT_AGE = timedelta(hours=24)
UNKNOWN_WORKING_DIR = "unknown"


@dataclass
class RunningProcess:
    """A live CLI process attached to a conversation."""

    pid: str
    command: str
    working_dir: str = UNKNOWN_WORKING_DIR
    start_time: str = ""
    has_active_command: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "command": self.command,
            "workingDir": self.working_dir,
            "startTime": self.start_time,
            "hasActiveCommand": self.has_active_command,
        }


@dataclass
class Conversation:
    id: str
    file_path: str
    filename: str
    message_count: int
    file_size: int
    last_modified: datetime
    created: datetime
    tokens: int
    token_usage: TokenUsageSummary
    model_info: ModelInfo
    tool_usage: ToolUsage
    project: str
    status: ConversationStatus
    conversation_state: ConversationState
    status_squares: list[StatusSquare] = field(default_factory=list)
    running_process: RunningProcess | None = None
    messages: list[Message] | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "filePath": self.file_path,
            "messageCount": self.message_count,
            "fileSize": self.file_size,
            "lastModified": self.last_modified.isoformat(),
            "created": self.created.isoformat(),
            "tokens": self.tokens,
            "tokenUsage": self.token_usage.to_dict(),
            "modelInfo": self.model_info.to_dict(),
            "toolUsage": self.tool_usage.to_dict(),
            "project": self.project,
            "status": self.status.value,
            "conversationState": self.conversation_state.value,
            "statusSquares": [s.to_dict() for s in self.status_squares],
            "runningProcess": self.running_process.to_dict() if self.running_process else None,
        }


@dataclass
class ActiveProject:
    name: str
    path: str
    last_activity: datetime
    todo_files: int
    status: str  # "active", "recent", "inactive"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "lastActivity": self.last_activity.isoformat(),
            "todoFiles": self.todo_files,
            "status": self.status,
        }


@dataclass
class EnrichmentResult:
    conversations: list[Conversation]
    orphan_processes: list[RunningProcess] = field(default_factory=list)
    active_process_count: int = 0


class ProcessSource(Protocol):
    """Anything able to attach running CLI processes to conversations."""

    async def enrich_with_running_processes(
        self,
        conversations: list[Conversation],
        root_dir: Path,
        state_calculator: StateCalculator,
    ) -> EnrichmentResult: ...


@dataclass
class AnalysisResult:
    conversations: list[Conversation]
    active_projects: list[ActiveProject]
    summary: dict[str, Any]
    orphan_processes: list[RunningProcess] = field(default_factory=list)
    realtime_stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversations": [c.to_dict() for c in self.conversations],
            "activeProjects": [p.to_dict() for p in self.active_projects],
            "summary": self.summary,
            "orphanProcesses": [p.to_dict() for p in self.orphan_processes],
            "realtimeStats": self.realtime_stats,
        }


def path_set_key(name: str, paths: list[str]) -> str:
    """Cache key for an aggregate over exactly this set of logs."""
    digest = hashlib.sha1("\n".join(sorted(paths)).encode("utf-8")).hexdigest()
    return f"{name}:{digest}"


def conversation_id_for(path: str | os.PathLike[str]) -> str:
    """Conversation id of a log path.

    Logs named ``conversation.jsonl`` take their directory's name; any other
    log is identified by its filename without the extension.
    """
    p = Path(path)
    if p.name == "conversation" + CONVERSATION_SUFFIX:
        return p.parent.name
    return p.stem


def determine_project_status(last_activity: datetime, now: datetime) -> str:
    age = now - last_activity
    if age < ACTIVE_PROJECT_AGE:
        return "active"
    if age < RECENT_PROJECT_AGE:
        return "recent"
    return "inactive"


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def find_conversation_files(root_dir: str | os.PathLike[str]) -> list[str]:
    """Every ``*.jsonl`` under ``root_dir`` (blocking)."""
    found: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(root_dir):
        for name in filenames:
            if name.endswith(CONVERSATION_SUFFIX):
                found.append(os.path.join(dirpath, name))
    found.sort()
    return found


def read_project_name(path: str | os.PathLike[str]) -> str:
    """Project a log belongs to (blocking).

    Looks at a ``settings.json`` beside the log first, then for a ``cwd``
    field in the first few entries, and gives up with ``"Unknown"``.
    """
    log_path = Path(path)
    settings = log_path.parent / SETTINGS_FILENAME
    if settings.is_file():
        try:
            data = json.loads(settings.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.debug("Unreadable %s: %s", settings, e)
            data = None
        if isinstance(data, dict):
            if isinstance(data.get("projectName"), str) and data["projectName"]:
                return data["projectName"]
            if isinstance(data.get("projectPath"), str) and data["projectPath"]:
                return os.path.basename(data["projectPath"].rstrip("/\\"))

    try:
        with open(log_path, encoding="utf-8", errors="replace") as f:
            for _, line in zip(range(PROJECT_SCAN_LINES), f):
                try:
                    item = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(item, dict):
                    continue
                cwd = item.get("cwd")
                if not cwd and isinstance(item.get("message"), dict):
                    cwd = item["message"].get("cwd")
                if isinstance(cwd, str) and cwd:
                    return os.path.basename(cwd.rstrip("/\\")) or cwd
    except OSError as e:
        log.debug("Cannot scan %s for cwd: %s", log_path, e)

    return UNKNOWN


def scan_active_projects(root_dir: str | os.PathLike[str], now: datetime) -> list[ActiveProject]:
    """Top-level, non-hidden directories of the root with their activity (blocking)."""
    projects: list[ActiveProject] = []
    try:
        entries = list(os.scandir(root_dir))
    except OSError as e:
        log.warning("Cannot list %s: %s", root_dir, e)
        return projects

    for entry in entries:
        if entry.name.startswith(".") or not entry.is_dir():
            continue
        try:
            last_activity = _from_epoch(entry.stat().st_mtime)
            todo_files = sum(1 for name in os.listdir(entry.path) if "todo" in name or "TODO" in name)
        except OSError as e:
            log.debug("Skipping project %s: %s", entry.path, e)
            continue
        projects.append(ActiveProject(
            name=entry.name,
            path=entry.path,
            last_activity=last_activity,
            todo_files=todo_files,
            status=determine_project_status(last_activity, now),
        ))

    projects.sort(key=lambda p: p.last_activity, reverse=True)
    return projects


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationAnalyzer:
    """Loads conversation records and aggregate statistics.

    Example:
        analyzer = ConversationAnalyzer(root, cache)
        result = await analyzer.load_initial_data(StateCalculator(), ProcessDetector())
    """

    def __init__(
        self,
        root_dir: str | os.PathLike[str],
        cache: DataCache,
        attach_messages: bool = False,
        window: timedelta = SESSION_DURATION,
        max_concurrency: int = 16,
        clock: Any = _utcnow,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.cache = cache
        self.attach_messages = attach_messages
        self.window = window
        self._limit = asyncio.Semaphore(max_concurrency)
        self._clock = clock

    async def load_initial_data(
        self,
        state_calculator: StateCalculator,
        process_detector: ProcessSource | None = None,
    ) -> AnalysisResult:
        conversations = await self.load_conversations(state_calculator)
        projects = await self.load_active_projects()

        orphans: list[RunningProcess] = []
        if process_detector is not None:
            try:
                enrichment = await process_detector.enrich_with_running_processes(
                    conversations, self.root_dir, state_calculator
                )
            except Exception as e:
                log.warning("Process enrichment failed: %s", e)
            else:
                conversations = enrichment.conversations
                orphans = enrichment.orphan_processes

        summary = await self.calculate_summary(conversations, projects)
        return AnalysisResult(
            conversations=conversations,
            active_projects=projects,
            summary=summary,
            orphan_processes=orphans,
            realtime_stats=self.realtime_stats(conversations),
        )

    async def find_conversation_files(self) -> list[str]:
        if not self.root_dir.is_dir():
            log.warning("Conversation root %s does not exist", self.root_dir)
            return []
        return await self.cache.run_blocking(find_conversation_files, self.root_dir)

    async def load_conversations(self, state_calculator: StateCalculator) -> list[Conversation]:
        """Records for every log, most recently modified first."""
        paths = await self.find_conversation_files()

        async def load(path: str) -> Conversation | None:
            async with self._limit:
                return await self.load_conversation(path, state_calculator)

        results = await asyncio.gather(*(load(p) for p in paths))
        conversations = [c for c in results if c is not None]
        conversations.sort(key=lambda c: c.last_modified, reverse=True)
        log.debug("Loaded %d conversations from %d files", len(conversations), len(paths))
        return conversations

    async def load_conversation(self, path: str, state_calculator: StateCalculator) -> Conversation | None:
        """One record, or None when the file vanished."""
        try:
            stats = await self.cache.get_file_stats(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("Cannot stat %s: %s", path, e)
            return None

        try:
            messages = await self.cache.get_parsed_conversation(path)
        except FileNotFoundError:
            return None
        except Exception as e:
            log.warning("Failed to parse %s, treating as empty: %s", path, e)
            messages = []

        try:
            token_usage = await self.cache.get_cached_token_usage(path, lambda: calculate_token_usage(messages))
            model_info = await self.cache.get_cached_model_info(path, lambda: extract_model_info(messages))
            tool_usage = await self.cache.get_cached_tool_usage(path, lambda: extract_tool_usage(messages))
            squares = await self.cache.get_cached_status_squares(path, lambda: generate_status_squares(messages))
            project = await self.resolve_project_name(path)
        except FileNotFoundError:
            log.debug("%s vanished while loading", path)
            return None

        last_modified = _from_epoch(stats.st_mtime)
        birth = getattr(stats, "st_birthtime", None)
        if birth is not None:
            created = _from_epoch(birth)
        elif messages:
            created = min(m.timestamp for m in messages)
        else:
            created = last_modified

        if token_usage.total > 0:
            tokens = token_usage.total
        else:
            tokens = estimate_tokens(stats.st_size)

        now = self._clock()
        return Conversation(
            id=conversation_id_for(path),
            file_path=path,
            filename=os.path.basename(path),
            message_count=len(messages),
            file_size=stats.st_size,
            last_modified=last_modified,
            created=created,
            tokens=tokens,
            token_usage=token_usage,
            model_info=model_info,
            tool_usage=tool_usage,
            project=project,
            status=state_calculator.determine_conversation_status(messages, last_modified, now),
            conversation_state=state_calculator.determine_conversation_state(messages, last_modified, None, now),
            status_squares=squares,
            messages=messages if self.attach_messages else None,
        )

    async def resolve_project_name(self, path: str) -> str:
        settings = os.path.join(os.path.dirname(path), SETTINGS_FILENAME)
        return await self.cache.get_cached_computation(
            f"project:{path}",
            lambda: self.cache.run_blocking(read_project_name, path),
            [path, settings],
        )

    async def load_active_projects(self) -> list[ActiveProject]:
        if not self.root_dir.is_dir():
            return []
        return await self.cache.run_blocking(scan_active_projects, self.root_dir, self._clock())

    async def calculate_summary(
        self,
        conversations: list[Conversation],
        active_projects: list[ActiveProject],
    ) -> dict[str, Any]:
        """Totals across all conversations, rebuilt only when some log changed."""
        paths = [c.file_path for c in conversations]
        try:
            return await self.cache.get_cached_computation(
                path_set_key("summary", paths),
                lambda: self._compute_summary(conversations, active_projects),
                paths,
            )
        except Exception:
            log.exception("Summary computation failed")
            return self._empty_summary()

    def _empty_summary(self) -> dict[str, Any]:
        return {
            "totalConversations": 0,
            "totalTokens": 0,
            "activeConversations": 0,
            "activeProjects": 0,
            "avgTokensPerConversation": 0,
            "totalFileSize": format_bytes(0),
            "dataSize": format_bytes(0),
            "lastActivity": None,
            "claudeSessions": 0,
            "claudeSessionsDetail": "no sessions",
            "claudeSessionsFullData": {"total": 0, "currentMonth": 0, "thisWeek": 0, "sessions": []},
        }

    async def _compute_summary(
        self,
        conversations: list[Conversation],
        active_projects: list[ActiveProject],
    ) -> dict[str, Any]:
        total_tokens = sum(c.tokens for c in conversations)
        total_size = sum(c.file_size for c in conversations)
        count = len(conversations)
        sessions = await self.calculate_usage_windows(conversations)
        windows = sessions["total"]
        return {
            "totalConversations": count,
            "totalTokens": total_tokens,
            "activeConversations": sum(1 for c in conversations if c.status == ConversationStatus.ACTIVE),
            "activeProjects": sum(1 for p in active_projects if p.status == "active"),
            "avgTokensPerConversation": round(total_tokens / count) if count else 0,
            "totalFileSize": format_bytes(total_size),
            "dataSize": format_bytes(total_size),
            "lastActivity": max(c.last_modified for c in conversations).isoformat() if conversations else None,
            "claudeSessions": windows,
            "claudeSessionsDetail": f"{windows} session{'s' if windows > 1 else ''}" if windows else "no sessions",
            "claudeSessionsFullData": sessions,
        }

    async def calculate_usage_windows(self, conversations: list[Conversation]) -> dict[str, Any]:
        """Usage windows built from real user-message times."""
        paths = [c.file_path for c in conversations]
        return await self.cache.get_cached_computation(
            path_set_key("sessions", paths),
            lambda: self._compute_usage_windows(conversations),
            paths,
        )

    async def _compute_usage_windows(self, conversations: list[Conversation]) -> dict[str, Any]:
        points: list[TimelineMessage] = []
        for conversation in conversations:
            try:
                messages = await self.cache.get_parsed_conversation(conversation.file_path)
            except OSError:
                continue
            points.extend(
                TimelineMessage(m.timestamp, m.role, conversation.id, m.usage)
                for m in messages
                if m.role == "user"
            )

        now = self._clock()
        windows = partition_windows(points, self.window)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        week_start = now - timedelta(days=7)
        return {
            "total": len(windows),
            "currentMonth": sum(1 for w in windows if w.start >= month_start),
            "thisWeek": sum(1 for w in windows if w.start >= week_start),
            "sessions": [
                {
                    "start": w.start.isoformat(),
                    "end": w.end.isoformat(),
                    "messageCount": len(w.members),
                    "conversationCount": len({m.conversation_id for m in w.members}),
                    "duration": round((w.end - w.start).total_seconds() / 3600, 1),
                }
                for w in windows
            ],
        }

    def realtime_stats(self, conversations: list[Conversation]) -> dict[str, Any]:
        now = self._clock()
        recent = [c for c in conversations if now - c.last_modified < timedelta(hours=1)]
        return {
            "totalConversations": len(conversations),
            "activeConversations": sum(1 for c in conversations if c.status == ConversationStatus.ACTIVE),
            "recentConversations": len(recent),
            "runningProcesses": sum(1 for c in conversations if c.running_process is not None),
            "lastActivity": max(c.last_modified for c in conversations).isoformat() if conversations else None,
            "timestamp": now.isoformat(),
        }

    async def find_conversation_path(self, conversation_id: str) -> str:
        for path in await self.find_conversation_files():
            if conversation_id_for(path) == conversation_id:
                return path
        raise ConversationNotFoundError(conversation_id)

    async def get_conversation_detail(self, conversation_id: str) -> dict[str, Any]:
        """Full message list for one conversation."""
        path = await self.find_conversation_path(conversation_id)
        messages = await self.cache.get_parsed_conversation(path)
        return {
            "conversationId": conversation_id,
            "filePath": path,
            "messageCount": len(messages),
            "messages": [m.to_dict() for m in messages],
        }
