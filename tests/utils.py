"""Shared test utilities for convopulse tests."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def user_entry(ts: datetime, text: str = "hello", uuid: str | None = None, cwd: str | None = None) -> dict[str, Any]:
    """A user turn as the CLI logs it."""
    entry: dict[str, Any] = {
        "type": "user",
        "timestamp": iso(ts),
        "uuid": uuid or f"u-{ts.timestamp():.0f}",
        "message": {"role": "user", "content": text},
    }
    if cwd is not None:
        entry["cwd"] = cwd
    return entry


def assistant_entry(
    ts: datetime,
    content: str | list[dict[str, Any]] = "Done.",
    model: str = "claude-sonnet-4",
    usage: dict[str, Any] | None = None,
    msg_id: str | None = None,
) -> dict[str, Any]:
    """An assistant turn, optionally with token usage."""
    message: dict[str, Any] = {
        "id": msg_id or f"msg-{ts.timestamp():.0f}",
        "role": "assistant",
        "model": model,
        "content": content,
    }
    if usage is not None:
        message["usage"] = usage
    return {"type": "assistant", "timestamp": iso(ts), "uuid": f"a-{ts.timestamp():.0f}", "message": message}


def tool_use_entry(ts: datetime, tool_id: str, name: str = "Bash", params: dict[str, Any] | None = None) -> dict[str, Any]:
    return assistant_entry(
        ts,
        [
            {"type": "text", "text": "Running it."},
            {"type": "tool_use", "id": tool_id, "name": name, "input": params or {"command": "ls"}},
        ],
    )


def tool_result_entry(
    ts: datetime, tool_id: str, content: str = "ok", extra: dict[str, Any] | None = None
) -> dict[str, Any]:
    """The user-side entry the CLI writes for a tool result."""
    entry: dict[str, Any] = {
        "type": "user",
        "timestamp": iso(ts),
        "uuid": f"r-{tool_id}",
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": content}],
        },
    }
    if extra is not None:
        entry["toolUseResult"] = extra
    return entry


def usage(input_tokens: int = 100, output_tokens: int = 50, tier: str | None = "standard", **extra: int) -> dict[str, Any]:
    data: dict[str, Any] = {"input_tokens": input_tokens, "output_tokens": output_tokens, **extra}
    if tier is not None:
        data["service_tier"] = tier
    return data


def write_jsonl(path: Path, entries: list[dict[str, Any]], mtime: datetime | None = None) -> Path:
    """Write entries one per line, optionally pinning the file's mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(e) + "\n" for e in entries), encoding="utf-8")
    if mtime is not None:
        set_mtime(path, mtime)
    return path


def set_mtime(path: Path, when: datetime | float) -> None:
    ts = when.timestamp() if isinstance(when, datetime) else when
    os.utime(path, (ts, ts))


class MockWebSocket:
    """Mock WebSocket for testing."""

    def __init__(self, should_fail: bool = False, incoming: list[str] | None = None):
        self.should_fail = should_fail
        self.accepted = False
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.sent_messages: list[dict[str, Any]] = []
        self.incoming = list(incoming or [])
        self.client = None
        self.headers: dict[str, str] = {"user-agent": "pytest"}

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message: dict[str, Any]) -> None:
        if self.should_fail:
            raise Exception("WebSocket connection failed")
        self.sent_messages.append(message)

    async def receive_text(self) -> str:
        from fastapi import WebSocketDisconnect

        if not self.incoming:
            raise WebSocketDisconnect(code=1000)
        return self.incoming.pop(0)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def types(self) -> list[str]:
        return [m.get("type") for m in self.sent_messages]


def make_conversation(
    conversation_id: str = "conv-1",
    created: datetime | None = None,
    last_modified: datetime | None = None,
    message_count: int = 0,
    project: str = "proj",
    messages: list[Any] | None = None,
    token_usage: Any = None,
    model_info: Any = None,
    running_process: Any = None,
    status: Any = None,
) -> Any:
    """A Conversation record with neutral defaults."""
    from convopulse.analysis.conversation import Conversation
    from convopulse.analysis.metrics import ModelInfo, TokenUsageSummary, ToolUsage
    from convopulse.analysis.state import ConversationState, ConversationStatus

    created = created or datetime(2025, 6, 15, 10, 0, tzinfo=timezone.utc)
    return Conversation(
        id=conversation_id,
        file_path=f"/logs/{project}/{conversation_id}.jsonl",
        filename=f"{conversation_id}.jsonl",
        message_count=message_count,
        file_size=0,
        last_modified=last_modified or created,
        created=created,
        tokens=0,
        token_usage=token_usage or TokenUsageSummary(),
        model_info=model_info or ModelInfo(),
        tool_usage=ToolUsage(),
        project=project,
        status=status or ConversationStatus.IDLE,
        conversation_state=ConversationState.IDLE,
        running_process=running_process,
        messages=messages,
    )
