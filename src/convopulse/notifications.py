"""Throttled notifications on top of the WebSocket server.

NotificationManager is the host's single entry point for pushing events:
it throttles bursts per key, records a bounded history and fans out to
local subscribers as well as to WebSocket clients.
"""

from __future__ import annotations

import inspect
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from convopulse.config.schema import NotificationConfig
from convopulse.dashboard.protocol import CONVERSATION_UPDATES
from convopulse.dashboard.websocket import REFRESH_REQUESTED
from convopulse.logging import get_logger

if TYPE_CHECKING:
    from convopulse.dashboard.websocket import WebSocketServer

log = get_logger("notifications")

FILE_UPDATES = "file_updates"
PROCESS_UPDATES = "process_updates"


class NotificationLevel(Enum):
    """Severity of a system status notification."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class Notification:
    """A notification recorded in history and delivered to subscribers.

    Attributes:
        type: Notification type, e.g. "conversation_state_change"
        payload: Type-specific fields
        id: Unique notification id
        timestamp: When the notification was generated
    """

    type: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: f"notif_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}")
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "timestamp": self.timestamp, **self.payload}


Subscriber = Callable[[Notification], Any]


class NotificationManager:
    """Routes notifications to WebSocket clients and local subscribers."""

    def __init__(
        self,
        server: WebSocketServer | None = None,
        config: NotificationConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.server = server
        self.config = config or NotificationConfig()
        self._clock = clock
        self._history: deque[Notification] = deque(maxlen=self.config.max_history)
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._throttle: dict[str, float] = {}

    async def initialize(self) -> None:
        if self.server is not None:
            self.server.on(REFRESH_REQUESTED, self._handle_refresh_request)
        log.info("Notification manager initialized")

    async def shutdown(self) -> None:
        if self.server is not None:
            self.server.off(REFRESH_REQUESTED, self._handle_refresh_request)
        self._subscribers.clear()
        self._throttle.clear()

    # -- throttling ---------------------------------------------------------------

    def is_throttled(self, key: str, window: float | None = None) -> bool:
        """True when ``key`` fired within ``window`` seconds; otherwise records it."""
        window = self.config.throttle_seconds if window is None else window
        now = self._clock()
        last = self._throttle.get(key)
        if last is not None and now - last < window:
            return True
        self._throttle[key] = now
        return False

    def cleanup_throttle_map(self) -> int:
        """Forget throttle keys older than ten throttle windows."""
        cutoff = self._clock() - self.config.throttle_seconds * 10
        stale = [k for k, t in self._throttle.items() if t < cutoff]
        for key in stale:
            del self._throttle[key]
        return len(stale)

    # -- notifications --------------------------------------------------------------

    async def notify_conversation_state_change(
        self,
        conversation_id: str,
        new_state: str,
        metadata: dict[str, Any] | None = None,
        old_state: str | None = None,
    ) -> Notification | None:
        if self.is_throttled(f"state_{conversation_id}"):
            log.debug("Throttling state change for %s", conversation_id)
            return None
        metadata = metadata or {}
        notification = Notification("conversation_state_change", {
            "conversationId": conversation_id,
            "oldState": old_state,
            "newState": new_state,
            "metadata": metadata,
        })
        if self.server is not None:
            await self.server.notify_conversation_state_change(
                conversation_id, new_state, {"oldState": old_state, **metadata}
            )
        await self._record(notification)
        log.info("State change: %s %s -> %s", conversation_id, old_state, new_state)
        return notification

    async def notify_data_refresh(self, data: dict[str, Any], source: str = "system") -> Notification | None:
        if self.is_throttled("data_refresh"):
            log.debug("Throttling data refresh notification")
            return None
        notification = Notification("data_refresh", {"data": data, "source": source})
        if self.server is not None:
            await self.server.notify_data_refresh(data)
        await self._record(notification)
        log.debug("Data refreshed (source: %s)", source)
        return notification

    async def notify_new_message(
        self, conversation_id: str, message: dict[str, Any], metadata: dict[str, Any] | None = None
    ) -> Notification:
        metadata = metadata or {}
        notification = Notification("new_message", {
            "conversationId": conversation_id,
            "message": message,
            "metadata": metadata,
        })
        if self.server is not None:
            await self.server.broadcast(
                {
                    "type": "new_message",
                    "data": {"conversationId": conversation_id, "message": message, "metadata": metadata},
                },
                CONVERSATION_UPDATES,
            )
        await self._record(notification)
        return notification

    async def notify_system_status(
        self, status: dict[str, Any], level: NotificationLevel | str = NotificationLevel.INFO
    ) -> Notification:
        level = NotificationLevel(str(level))
        notification = Notification("system_status", {"status": status, "level": str(level)})
        if self.server is not None:
            await self.server.notify_system_status({**status, "level": str(level)})
        await self._record(notification)

        text = status.get("message") or status
        if level is NotificationLevel.ERROR:
            log.error("System status: %s", text)
        elif level is NotificationLevel.WARNING:
            log.warning("System status: %s", text)
        else:
            log.info("System status: %s", text)
        return notification

    async def notify_file_change(self, file_path: str, change_type: str) -> Notification | None:
        if self.is_throttled(f"file_{file_path}", self.config.file_throttle_seconds):
            return None
        notification = Notification("file_change", {"filePath": file_path, "changeType": change_type})
        if self.server is not None:
            await self.server.broadcast(
                {"type": "file_change", "data": {"filePath": file_path, "changeType": change_type}},
                FILE_UPDATES,
            )
        await self._record(notification)
        return notification

    async def notify_process_change(
        self, processes: list[dict[str, Any]], changed_processes: list[dict[str, Any]]
    ) -> Notification | None:
        if self.is_throttled("process_change", self.config.process_throttle_seconds):
            return None
        notification = Notification("process_change", {
            "processes": processes,
            "changedProcesses": changed_processes,
        })
        if self.server is not None:
            await self.server.broadcast(
                {"type": "process_change", "data": {"processes": processes, "changedProcesses": changed_processes}},
                PROCESS_UPDATES,
            )
        await self._record(notification)
        if changed_processes:
            log.info("Process changes detected: %d processes", len(changed_processes))
        return notification

    async def create_batch(
        self, notifications: list[dict[str, Any]], batch_type: str = "batch"
    ) -> Notification | None:
        if not notifications:
            return None
        notification = Notification(batch_type, {"notifications": notifications, "count": len(notifications)})
        if self.server is not None:
            await self.server.broadcast(
                {"type": batch_type, "data": {"notifications": notifications, "count": len(notifications)}}
            )
        await self._record(notification)
        return notification

    async def _handle_refresh_request(self, data: dict[str, Any]) -> None:
        log.info("Refresh requested by client %s", data.get("clientId"))
        await self._notify_subscribers(
            Notification(REFRESH_REQUESTED, {"clientId": data.get("clientId")})
        )

    # -- subscribers and history ------------------------------------------------------

    def subscribe(self, notification_type: str, callback: Subscriber) -> Callable[[], None]:
        """Register a local subscriber. Returns a callable that unsubscribes it."""
        self._subscribers.setdefault(notification_type, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(notification_type)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[notification_type]

        return unsubscribe

    async def _record(self, notification: Notification) -> None:
        self._history.append(notification)
        await self._notify_subscribers(notification)

    async def _notify_subscribers(self, notification: Notification) -> None:
        for callback in list(self._subscribers.get(notification.type, [])):
            try:
                result = callback(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("Error in notification subscriber for %s", notification.type)

    def get_history(self, notification_type: str | None = None, limit: int = 100) -> list[Notification]:
        history = [n for n in self._history if notification_type is None or n.type == notification_type]
        return history[-limit:] if limit > 0 else []

    def clear_history(self, notification_type: str | None = None) -> None:
        if notification_type is None:
            self._history.clear()
        else:
            kept = [n for n in self._history if n.type != notification_type]
            self._history.clear()
            self._history.extend(kept)
        log.debug("Cleared notification history%s", f" for {notification_type}" if notification_type else "")

    def get_stats(self) -> dict[str, Any]:
        type_count: dict[str, int] = {}
        for notification in self._history:
            type_count[notification.type] = type_count.get(notification.type, 0) + 1
        return {
            "historySize": len(self._history),
            "maxHistorySize": self.config.max_history,
            "subscriberCount": len(self._subscribers),
            "typeCount": type_count,
            "throttleMapSize": len(self._throttle),
            "webSocketConnected": self.server.is_running if self.server is not None else False,
            "webSocketClients": self.server.client_count if self.server is not None else 0,
        }
