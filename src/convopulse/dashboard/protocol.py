"""Inbound WebSocket message types."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from convopulse.logging import get_logger

log = get_logger("dashboard.protocol")

CONVERSATION_UPDATES = "conversation_updates"
DATA_UPDATES = "data_updates"
SYSTEM_UPDATES = "system_updates"
CHANNELS = (CONVERSATION_UPDATES, DATA_UPDATES, SYSTEM_UPDATES)


class ClientMessage(BaseModel):
    """Base model for client messages with populate_by_name enabled."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class SubscribeMessage(ClientMessage):
    type: Literal["subscribe"] = "subscribe"
    channel: str = Field(min_length=1)


class UnsubscribeMessage(ClientMessage):
    type: Literal["unsubscribe"] = "unsubscribe"
    channel: str = Field(min_length=1)


class PingMessage(ClientMessage):
    type: Literal["ping"] = "ping"


class PongMessage(ClientMessage):
    type: Literal["pong"] = "pong"


class RefreshRequestMessage(ClientMessage):
    type: Literal["refresh_request"] = "refresh_request"
    reason: str | None = None


InboundMessage = (
    SubscribeMessage | UnsubscribeMessage | PingMessage | PongMessage | RefreshRequestMessage
)

INBOUND_TYPES: dict[str, type[ClientMessage]] = {
    "subscribe": SubscribeMessage,
    "unsubscribe": UnsubscribeMessage,
    "ping": PingMessage,
    "pong": PongMessage,
    "refresh_request": RefreshRequestMessage,
}


def parse_client_message(raw: str | bytes, client_id: str = "?") -> InboundMessage | None:
    """Validate one inbound frame. Malformed or unknown messages yield None."""
    try:
        data: Any = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        log.warning("Unparseable message from %s: %s", client_id, e)
        return None
    if not isinstance(data, dict):
        log.warning("Non-object message from %s", client_id)
        return None

    msg_type = data.get("type")
    model = INBOUND_TYPES.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        log.warning("Unknown message type from %s: %s", client_id, msg_type)
        return None
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as e:
        log.warning("Invalid %s message from %s: %s", msg_type, client_id, e.error_count())
        return None
