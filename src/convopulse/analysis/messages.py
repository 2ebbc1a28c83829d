"""Conversation log message model and JSONL parser.

A conversation log holds one JSON object per line. Only ``user`` and
``assistant`` entries that carry a ``message`` object and a timestamp become
messages. Tool results, which the log records as separate user entries, are
folded into the assistant message whose ``tool_use`` block they answer.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal

from convopulse.logging import get_logger

log = get_logger("parser")

TAIL_BYTES = 64 * 1024


@dataclass
class Usage:
    """Token counts reported for one assistant turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    service_tier: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Usage | None:
        if not isinstance(data, dict):
            return None
        return cls(
            input_tokens=_as_int(data.get("input_tokens")),
            output_tokens=_as_int(data.get("output_tokens")),
            cache_creation_input_tokens=_as_int(data.get("cache_creation_input_tokens")),
            cache_read_input_tokens=_as_int(data.get("cache_read_input_tokens")),
            service_tier=data.get("service_tier") if isinstance(data.get("service_tier"), str) else None,
        )

    @property
    def prompt_tokens(self) -> int:
        """Input plus cache-creation tokens, the basis of message weight."""
        return self.input_tokens + self.cache_creation_input_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "service_tier": self.service_tier,
        }


@dataclass
class ToolResult:
    """A tool_result block attached to the message that issued the tool_use."""

    tool_use_id: str
    content: Any = None
    is_error: bool = False
    stdout: str | None = None
    stderr: str | None = None
    interrupted: bool = False
    is_image: bool = False
    return_code_interpretation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "interrupted": self.interrupted,
            "isImage": self.is_image,
            "returnCodeInterpretation": self.return_code_interpretation,
        }


@dataclass
class _BaseMessage:
    message_id: str
    timestamp: datetime
    content: str | list[dict[str, Any]]
    uuid: str | None = None
    model: str | None = None
    usage: Usage | None = None
    tool_results: list[ToolResult] = field(default_factory=list)
    is_compact_summary: bool = False

    role: ClassVar[str]

    def blocks(self) -> list[dict[str, Any]]:
        if isinstance(self.content, list):
            return self.content
        return []

    def text(self) -> str:
        """Plain text of the message (string content, or joined text blocks)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            b.get("text", "") for b in self.content if b.get("type") == "text" and isinstance(b.get("text"), str)
        )

    def tool_uses(self) -> list[dict[str, Any]]:
        return [b for b in self.blocks() if b.get("type") == "tool_use"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "role": self.role,
            "timestamp": self.timestamp.isoformat(),
            "content": self.content,
            "model": self.model,
            "usage": self.usage.to_dict() if self.usage else None,
            "toolResults": [r.to_dict() for r in self.tool_results],
            "isCompactSummary": self.is_compact_summary,
            "uuid": self.uuid,
        }


@dataclass
class UserMessage(_BaseMessage):
    role: ClassVar[Literal["user"]] = "user"


@dataclass
class AssistantMessage(_BaseMessage):
    role: ClassVar[Literal["assistant"]] = "assistant"


Message = UserMessage | AssistantMessage

_MESSAGE_TYPES: dict[str, type[UserMessage] | type[AssistantMessage]] = {
    "user": UserMessage,
    "assistant": AssistantMessage,
}


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or epoch milliseconds) into an aware UTC datetime."""
    if isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _content_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    if isinstance(content, dict):
        return [content]
    return []


def _tool_result(block: dict[str, Any], extra: Any) -> ToolResult:
    result = ToolResult(
        tool_use_id=str(block.get("tool_use_id")),
        content=block.get("content"),
        is_error=bool(block.get("is_error", False)),
    )
    if isinstance(extra, dict):
        result.stdout = extra.get("stdout")
        result.stderr = extra.get("stderr")
        result.interrupted = bool(extra.get("interrupted", False))
        result.is_image = bool(extra.get("isImage", False))
        result.return_code_interpretation = extra.get("returnCodeInterpretation")
    return result


def correlate_entries(entries: Iterable[dict[str, Any]]) -> list[Message]:
    """Turn decoded log entries into messages, folding tool results in.

    Entries that are not user/assistant turns, have no ``message`` object or
    no parseable timestamp are skipped. A user entry carrying ``tool_result``
    blocks never becomes a message of its own: each result is attached to the
    assistant message holding the matching ``tool_use`` id, and results with
    no known owner are dropped.
    """
    messages: list[Message] = []
    tool_owners: dict[str, AssistantMessage] = {}

    for position, item in enumerate(entries):
        entry_type = item.get("type")
        payload = item.get("message")
        cls = _MESSAGE_TYPES.get(entry_type) if isinstance(entry_type, str) else None
        if cls is None or not isinstance(payload, dict):
            continue

        timestamp = parse_timestamp(item.get("timestamp"))
        if timestamp is None:
            log.debug("Skipping %s entry without timestamp", entry_type)
            continue

        content = payload.get("content", "")
        blocks = _content_blocks(content)

        if cls is UserMessage:
            results = [b for b in blocks if b.get("type") == "tool_result"]
            if results:
                for block in results:
                    owner = tool_owners.get(str(block.get("tool_use_id")))
                    if owner is None:
                        log.debug("Dropping tool_result for unknown tool_use %s", block.get("tool_use_id"))
                        continue
                    owner.tool_results.append(_tool_result(block, item.get("toolUseResult")))
                continue

        if isinstance(content, dict):
            content = [content]
        elif not isinstance(content, (str, list)):
            content = ""

        message = cls(
            message_id=str(payload.get("id") or item.get("uuid") or f"entry-{position}"),
            timestamp=timestamp,
            content=content,
            uuid=item.get("uuid"),
            model=payload.get("model") if isinstance(payload.get("model"), str) else None,
            usage=Usage.from_dict(payload.get("usage")),
            is_compact_summary=bool(item.get("isCompactSummary", False)),
        )
        if isinstance(message, AssistantMessage):
            for block in message.tool_uses():
                if block.get("id"):
                    tool_owners[str(block["id"])] = message
        messages.append(message)

    return messages


def decode_lines(lines: Iterable[str]) -> list[dict[str, Any]]:
    """Decode JSONL lines, skipping blanks, bad JSON and non-object values."""
    entries: list[dict[str, Any]] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            log.debug("Skipping malformed line: %.80s", line)
            continue
        if isinstance(item, dict):
            entries.append(item)
    return entries


def parse_conversation_text(text: str) -> list[Message]:
    return correlate_entries(decode_lines(text.splitlines()))


def read_tail_messages(path: str | os.PathLike[str], max_bytes: int = TAIL_BYTES) -> list[Message]:
    """Parse only the last ``max_bytes`` of a log (blocking)."""
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        size = f.tell()
        start = max(0, size - max_bytes)
        f.seek(start)
        data = f.read()

    text = data.decode("utf-8", errors="replace")
    if start > 0:
        # First line is almost certainly cut in half
        _, _, text = text.partition("\n")
    return parse_conversation_text(text)
