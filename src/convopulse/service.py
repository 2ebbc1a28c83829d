"""The analytics service: one instance of every component, wired together."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from convopulse.analysis.conversation import AnalysisResult, Conversation, ConversationAnalyzer
from convopulse.analysis.metrics import TokenUsageSummary
from convopulse.analysis.processes import ProcessDetector
from convopulse.analysis.session_info import ExternalSessionInfo, read_session_info
from convopulse.analysis.sessions import SessionAnalysis, SessionAnalyzer
from convopulse.analysis.state import StateCalculator
from convopulse.cache import DataCache
from convopulse.config import Config
from convopulse.dashboard.websocket import REFRESH_REQUESTED, WebSocketServer
from convopulse.logging import get_logger
from convopulse.notifications import Notification, NotificationManager
from convopulse.reports import write_snapshot
from convopulse.watching import FileWatcher

log = get_logger("service")

# Conversations sent per data payload, newest first
MAX_CONVERSATIONS = 150


def detailed_token_usage(conversations: list[Conversation]) -> dict[str, Any]:
    """Token totals by category across conversations."""
    totals = TokenUsageSummary()
    for conversation in conversations:
        usage = conversation.token_usage
        totals.input_tokens += usage.input_tokens
        totals.output_tokens += usage.output_tokens
        totals.cache_creation_tokens += usage.cache_creation_tokens
        totals.cache_read_tokens += usage.cache_read_tokens
        totals.messages_with_usage += usage.messages_with_usage
        totals.total_messages += usage.total_messages
    totals.total = (
        totals.input_tokens + totals.output_tokens + totals.cache_creation_tokens + totals.cache_read_tokens
    )
    return totals.to_dict()


class AnalyticsService:
    """Owns the cache, analyzers, watcher and broadcast components.

    Example:
        service = AnalyticsService(load_config())
        await service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        config: Config | None = None,
        process_detector: ProcessDetector | None = None,
        watch: bool = True,
    ) -> None:
        self.config = config or Config()
        self.root_dir = self.config.paths.resolved_root()
        self.watch = watch

        window = timedelta(hours=self.config.session.window_hours)
        self.cache = DataCache(self.config.cache)
        self.state_calculator = StateCalculator()
        self.analyzer = ConversationAnalyzer(
            self.root_dir,
            self.cache,
            attach_messages=self.config.session.attach_messages,
            window=window,
        )
        self.session_analyzer = SessionAnalyzer(
            window=window,
            monthly_session_limit=self.config.session.monthly_session_limit,
            default_plan=self.config.session.default_plan,
        )
        self.process_detector = process_detector or ProcessDetector(
            message_loader=self.cache.get_parsed_conversation,
            ttl=self.config.cache.process_ttl,
        )
        self.websocket = WebSocketServer(self.config.websocket)
        self.notifications = NotificationManager(self.websocket, self.config.notifications)
        self.watcher = FileWatcher(self.config.watcher, notifier=self.notifications)

        self.data: AnalysisResult | None = None
        self.session_data: SessionAnalysis | None = None
        self._load_lock = asyncio.Lock()
        self._unsubscribe: Any = None
        self._started_at: float | None = None

    # -- lifecycle ---------------------------------------------------------------

    async def start(self) -> None:
        """Load data, then start broadcasting and watching."""
        if not self.root_dir.is_dir():
            log.warning("Conversation root %s not found; serving empty data", self.root_dir)
        self._started_at = time.time()
        self.cache.start()
        await self.websocket.initialize()
        await self.notifications.initialize()
        self._unsubscribe = self.notifications.subscribe(REFRESH_REQUESTED, self._on_refresh_requested)

        await self.load_data()
        if self.watch:
            await self.watcher.setup_file_watchers(
                self.root_dir,
                self.load_data,
                self.refresh_processes,
                cache=self.cache,
                on_conversation_change=self.on_conversation_change,
            )
        log.info("Analytics service started for %s", self.root_dir)

    async def stop(self) -> None:
        self.watcher.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.websocket.close()
        await self.notifications.shutdown()
        stats = self.cache.get_stats()
        log.info("Cache stats at shutdown: hit rate %s, %d invalidations", stats["hitRate"], stats["invalidations"])
        await self.cache.close()
        log.info("Analytics service stopped")

    # -- refresh ------------------------------------------------------------------

    async def load_data(self) -> AnalysisResult:
        """Full refresh: conversations, session analysis, broadcast, state changes."""
        async with self._load_lock:
            previous = self.data
            result = await self.analyzer.load_initial_data(self.state_calculator, self.process_detector)
            external = await self.read_external_session()
            self.session_data = self.session_analyzer.analyze_session_data(result.conversations, external)
            self.data = result

            await self.notifications.notify_data_refresh(self.data_payload(), "data_refresh")
            await self.detect_and_notify_state_changes(previous, result)
            return result

    async def refresh_processes(self) -> None:
        """Reattach running processes without reloading conversations."""
        if self.data is None:
            return
        enrichment = await self.process_detector.enrich_with_running_processes(
            self.data.conversations, self.root_dir, self.state_calculator
        )
        self.data.conversations = enrichment.conversations
        self.data.orphan_processes = enrichment.orphan_processes
        self.data.realtime_stats = self.analyzer.realtime_stats(self.data.conversations)

    async def on_conversation_change(self, conversation_id: str, path: str) -> None:
        log.debug("Conversation %s changed", conversation_id)
        await self.notifications.notify_file_change(path, "modified")

    async def _on_refresh_requested(self, notification: Notification) -> None:
        log.info("Refresh requested via WebSocket by %s", notification.payload.get("clientId"))
        await self.load_data()

    async def detect_and_notify_state_changes(
        self, previous: AnalysisResult | None, current: AnalysisResult
    ) -> int:
        """Notify status changes of conversations present in both results."""
        if previous is None:
            return 0
        before = {c.id: c for c in previous.conversations}
        changed = 0
        for conversation in current.conversations:
            old = before.get(conversation.id)
            if old is None or old.status == conversation.status:
                continue
            changed += 1
            await self.notifications.notify_conversation_state_change(
                conversation.id,
                conversation.status.value,
                {
                    "project": conversation.project,
                    "tokens": conversation.tokens,
                    "lastModified": conversation.last_modified.isoformat(),
                },
                old_state=old.status.value,
            )
        return changed

    async def read_external_session(self) -> ExternalSessionInfo | None:
        limit = timedelta(minutes=self.config.session.external_limit_minutes)
        return await self.cache.run_blocking(read_session_info, self.config.paths.resolved_statsig(), limit)

    # -- payloads -----------------------------------------------------------------

    def data_payload(self) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        if self.data is None:
            return {"conversations": [], "summary": {}, "activeProjects": [], "timestamp": now.isoformat()}
        payload = self.data.to_dict()
        payload["conversations"] = payload["conversations"][:MAX_CONVERSATIONS]
        payload["detailedTokenUsage"] = detailed_token_usage(self.data.conversations)
        payload["sessionData"] = self.session_data.to_dict() if self.session_data else None
        payload["timestamp"] = now.isoformat()
        return payload

    def realtime_payload(self) -> dict[str, Any]:
        stats = dict(self.data.realtime_stats) if self.data else {}
        stats["timestamp"] = datetime.now(timezone.utc).isoformat()
        return stats

    async def conversation_states(self) -> dict[str, Any]:
        """File-age states of conversations with a running process, without reading logs."""
        processes = await self.process_detector.detect_running_processes()
        active: list[dict[str, Any]] = []
        for conversation in self.data.conversations if self.data else []:
            if conversation.running_process is None:
                continue
            state = self.state_calculator.quick_state(conversation, processes)
            if state is not None:
                active.append({
                    "id": conversation.id,
                    "project": conversation.project,
                    "state": state.value,
                    "timestamp": int(time.time() * 1000),
                })
        return {"activeStates": active, "timestamp": int(time.time() * 1000)}

    async def session_payload(self) -> dict[str, Any]:
        external = await self.read_external_session()
        if self.session_data is None:
            conversations = self.data.conversations if self.data else []
            self.session_data = self.session_analyzer.analyze_session_data(conversations, external)
        payload = self.session_data.to_dict()
        payload["timer"] = self.session_analyzer.get_session_timer_data(self.session_data)
        payload["claudeSessionInfo"] = external.to_dict() if external else {"hasSession": False}
        payload["timestamp"] = int(time.time() * 1000)
        return payload

    def health(self) -> dict[str, Any]:
        uptime = time.time() - self._started_at if self._started_at else 0.0
        watching = self.watcher.is_watching()
        return {
            "status": "healthy" if watching or not self.watch else "degraded",
            "uptime": uptime,
            "rootDir": str(self.root_dir),
            "cache": self.cache.get_stats(),
            "watcher": self.watcher.get_status(),
            "websocket": self.websocket.get_stats(),
            "notifications": self.notifications.get_stats(),
            "timestamp": int(time.time() * 1000),
        }

    async def write_snapshot(self, now: datetime | None = None) -> Path:
        if self.data is None:
            await self.load_data()
        payload = self.data_payload()
        payload["sessionTimer"] = (
            self.session_analyzer.get_session_timer_data(self.session_data) if self.session_data else None
        )
        return await self.cache.run_blocking(
            write_snapshot, payload, self.config.paths.resolved_reports(), now
        )
