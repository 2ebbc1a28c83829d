"""WebSocket broadcast server for real-time analytics updates."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastapi import WebSocketDisconnect

from convopulse.config.schema import WebSocketConfig
from convopulse.dashboard.protocol import (
    CONVERSATION_UPDATES,
    DATA_UPDATES,
    SYSTEM_UPDATES,
    PingMessage,
    PongMessage,
    RefreshRequestMessage,
    SubscribeMessage,
    UnsubscribeMessage,
    parse_client_message,
)
from convopulse.logging import get_logger

if TYPE_CHECKING:
    from fastapi import WebSocket

log = get_logger("dashboard.websocket")

REFRESH_REQUESTED = "refresh_requested"


@dataclass
class Client:
    """A connected dashboard client."""

    id: str
    websocket: WebSocket
    connected_at: datetime
    ip: str | None = None
    user_agent: str | None = None
    is_alive: bool = True
    subscriptions: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ip": self.ip,
            "connectedAt": self.connected_at.isoformat(),
            "subscriptions": sorted(self.subscriptions),
            "isAlive": self.is_alive,
        }


def generate_client_id(now_ms: int) -> str:
    return f"client_{now_ms}_{uuid.uuid4().hex[:9]}"


class WebSocketServer:
    """Manages dashboard WebSocket clients.

    Broadcasts are filtered by channel subscription. While no client is
    connected, broadcasts are kept in a bounded queue and replayed to the
    next client that connects.
    """

    def __init__(self, config: WebSocketConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or WebSocketConfig()
        self._clock = clock
        self._clients: dict[str, Client] = {}
        self._lock = asyncio.Lock()
        self._queue: deque[dict[str, Any]] = deque(maxlen=self.config.max_queue_size)
        self._listeners: dict[str, list[Callable[[dict[str, Any]], Any]]] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._started_at: float | None = None
        self.is_running = False

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _stamp(self, message: dict[str, Any]) -> dict[str, Any]:
        return {**message, "timestamp": self._now_ms(), "server": self.config.server_name}

    # -- lifecycle -------------------------------------------------------------

    async def initialize(self) -> None:
        """Start the heartbeat loop."""
        if self.is_running:
            return
        self.is_running = True
        self._started_at = self._clock()
        if self.config.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        log.info("WebSocket server initialized on %s", self.config.path)

    async def close(self) -> None:
        """Close every client and stop the heartbeat."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task
            self._heartbeat_task = None

        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()

        for client in clients:
            with contextlib.suppress(Exception):
                await client.websocket.close(code=1000, reason="Server shutting down")
        self.is_running = False
        log.info("WebSocket server closed (%d clients)", len(clients))

    # -- connections -------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> Client:
        """Accept a socket, send the welcome message and replay queued messages."""
        await websocket.accept()
        remote = getattr(websocket, "client", None)
        headers = getattr(websocket, "headers", None) or {}
        client = Client(
            id=generate_client_id(self._now_ms()),
            websocket=websocket,
            connected_at=datetime.now(timezone.utc),
            ip=getattr(remote, "host", None),
            user_agent=headers.get("user-agent"),
        )
        async with self._lock:
            self._clients[client.id] = client
            queued = list(self._queue)
            self._queue.clear()
        log.info("WebSocket client connected: %s (%d total)", client.id, len(self._clients))

        await self.send_to_client(client.id, {
            "type": "connection",
            "data": {
                "clientId": client.id,
                "serverTime": datetime.now(timezone.utc).isoformat(),
                "message": f"Connected to {self.config.server_name} WebSocket",
            },
        })
        if queued:
            log.debug("Replaying %d queued messages to %s", len(queued), client.id)
        for message in queued:
            await self.send_to_client(client.id, {
                **message,
                "type": f"queued_{message.get('type')}",
                "wasQueued": True,
            })
        return client

    async def disconnect(self, client_id: str) -> None:
        async with self._lock:
            removed = self._clients.pop(client_id, None)
        if removed is not None:
            log.info("WebSocket client disconnected: %s (%d remaining)", client_id, len(self._clients))

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one socket until it disconnects."""
        client = await self.connect(websocket)
        try:
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect:
                    break
                await self.handle_client_message(client.id, raw)
        finally:
            await self.disconnect(client.id)

    async def handle_client_message(self, client_id: str, raw: str | bytes) -> None:
        client = self._clients.get(client_id)
        if client is None:
            return
        message = parse_client_message(raw, client_id)
        if message is None:
            return
        log.debug("Message from %s: %s", client_id, message.type)

        if isinstance(message, SubscribeMessage):
            client.subscriptions.add(message.channel)
            await self.send_to_client(client_id, {
                "type": "subscription_confirmed",
                "data": {"channel": message.channel, "subscriptions": sorted(client.subscriptions)},
            })
        elif isinstance(message, UnsubscribeMessage):
            client.subscriptions.discard(message.channel)
            await self.send_to_client(client_id, {
                "type": "unsubscription_confirmed",
                "data": {"channel": message.channel, "subscriptions": sorted(client.subscriptions)},
            })
        elif isinstance(message, PingMessage):
            await self.send_to_client(client_id, {"type": "pong"})
        elif isinstance(message, PongMessage):
            client.is_alive = True
        elif isinstance(message, RefreshRequestMessage):
            log.info("Refresh requested by %s", client_id)
            await self.emit(REFRESH_REQUESTED, {"clientId": client_id})

    # -- sending -----------------------------------------------------------------

    async def send_to_client(self, client_id: str, message: dict[str, Any]) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        try:
            await client.websocket.send_json(self._stamp(message))
        except Exception as e:
            log.warning("Error sending to client %s: %s", client_id, e)
            await self.disconnect(client_id)
            return False
        return True

    async def broadcast(self, message: dict[str, Any], channel: str | None = None) -> int:
        """Send to every client subscribed to ``channel`` (all when None).

        Returns the number of clients reached.
        """
        async with self._lock:
            if not self._clients:
                self._queue.append({**message, "queuedAt": self._now_ms()})
                return 0
            targets = [
                c for c in self._clients.values() if channel is None or channel in c.subscriptions
            ]

        payload = self._stamp(message)
        sent = 0
        dead: list[str] = []
        for client in targets:
            try:
                await client.websocket.send_json(payload)
                sent += 1
            except Exception as e:
                log.warning("Error sending to client %s: %s", client.id, e)
                dead.append(client.id)

        if dead:
            async with self._lock:
                for client_id in dead:
                    self._clients.pop(client_id, None)
        return sent

    async def notify_conversation_state_change(
        self, conversation_id: str, new_state: str, metadata: dict[str, Any] | None = None
    ) -> int:
        return await self.broadcast(
            {
                "type": "conversation_state_change",
                "data": {"conversationId": conversation_id, "newState": new_state, **(metadata or {})},
            },
            CONVERSATION_UPDATES,
        )

    async def notify_data_refresh(self, data: dict[str, Any]) -> int:
        return await self.broadcast({"type": "data_refresh", "data": data}, DATA_UPDATES)

    async def notify_system_status(self, status: dict[str, Any]) -> int:
        return await self.broadcast({"type": "system_status", "data": status}, SYSTEM_UPDATES)

    # -- heartbeat ---------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await self.heartbeat_once()
            except Exception:
                log.exception("Heartbeat failed")

    async def heartbeat_once(self) -> None:
        """Drop clients that never answered the last ping, then ping the rest."""
        async with self._lock:
            clients = list(self._clients.values())
            stale = [c for c in clients if not c.is_alive]
            for client in stale:
                del self._clients[client.id]

        for client in stale:
            log.info("Terminating unresponsive client: %s", client.id)
            with contextlib.suppress(Exception):
                await client.websocket.close(code=1001, reason="Heartbeat timeout")

        for client in clients:
            if client.is_alive:
                client.is_alive = False
                await self.send_to_client(client.id, {"type": "ping"})

    # -- events ------------------------------------------------------------------

    def on(self, event: str, callback: Callable[[dict[str, Any]], Any]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Callable[[dict[str, Any]], Any]) -> None:
        listeners = self._listeners.get(event)
        if listeners and callback in listeners:
            listeners.remove(callback)

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("Error in WebSocket listener for %s", event)

    # -- introspection -----------------------------------------------------------

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def get_client(self, client_id: str) -> Client | None:
        return self._clients.get(client_id)

    def get_stats(self) -> dict[str, Any]:
        uptime = 0
        if self.is_running and self._started_at is not None:
            uptime = int((self._clock() - self._started_at) * 1000)
        return {
            "isRunning": self.is_running,
            "clientCount": len(self._clients),
            "queuedMessages": len(self._queue),
            "clients": [c.to_dict() for c in self._clients.values()],
            "uptime": uptime,
        }
