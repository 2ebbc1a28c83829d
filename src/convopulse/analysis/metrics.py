"""Per-conversation metrics derived from parsed messages."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from convopulse.analysis.messages import Message

UNKNOWN = "Unknown"
STATUS_SQUARE_COUNT = 10

_TOOL_MARKER = re.compile(r"\[Tool:\s*([^\]]+)\]")


@dataclass
class TokenUsageSummary:
    total: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    messages_with_usage: int = 0
    total_messages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "messagesWithUsage": self.messages_with_usage,
            "totalMessages": self.total_messages,
        }


@dataclass
class ModelInfo:
    models: list[str] = field(default_factory=list)
    primary_model: str = UNKNOWN
    service_tiers: list[str] = field(default_factory=list)
    current_service_tier: str = UNKNOWN

    @property
    def has_multiple_models(self) -> bool:
        return len(self.models) > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "models": list(self.models),
            "primaryModel": self.primary_model,
            "serviceTiers": list(self.service_tiers),
            "currentServiceTier": self.current_service_tier,
            "hasMultipleModels": self.has_multiple_models,
        }


@dataclass
class ToolInvocation:
    tool: str
    timestamp: datetime
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "timestamp": self.timestamp.isoformat(),
            "type": "usage",
            "parameters": self.parameters,
        }


@dataclass
class ToolUsage:
    tool_stats: dict[str, int] = field(default_factory=dict)
    timeline: list[ToolInvocation] = field(default_factory=list)

    @property
    def total_tool_calls(self) -> int:
        return sum(self.tool_stats.values())

    @property
    def unique_tools(self) -> int:
        return len(self.tool_stats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolStats": dict(self.tool_stats),
            "toolTimeline": [t.to_dict() for t in self.timeline],
            "totalToolCalls": self.total_tool_calls,
            "uniqueTools": self.unique_tools,
        }


@dataclass
class StatusSquare:
    type: str  # "pending", "success", "tool", "error"
    tooltip: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "tooltip": self.tooltip}


def calculate_token_usage(messages: list[Message]) -> TokenUsageSummary:
    summary = TokenUsageSummary(total_messages=len(messages))
    for message in messages:
        usage = message.usage
        if usage is None:
            continue
        summary.input_tokens += usage.input_tokens
        summary.output_tokens += usage.output_tokens
        summary.cache_creation_tokens += usage.cache_creation_input_tokens
        summary.cache_read_tokens += usage.cache_read_input_tokens
        summary.messages_with_usage += 1
    summary.total = summary.input_tokens + summary.output_tokens
    return summary


def estimate_tokens(content: str | bytes | int) -> int:
    """Rough token count for logs that never recorded usage: one per 4 bytes.

    ``content`` may also be a byte count.
    """
    if isinstance(content, int):
        size = content
    elif isinstance(content, str):
        size = len(content.encode("utf-8"))
    else:
        size = len(content)
    return math.ceil(size / 4)


def extract_model_info(messages: list[Message]) -> ModelInfo:
    info = ModelInfo()
    for message in messages:
        if message.model and message.model not in info.models:
            info.models.append(message.model)
        if message.model:
            info.primary_model = message.model
        tier = message.usage.service_tier if message.usage else None
        if tier:
            if tier not in info.service_tiers:
                info.service_tiers.append(tier)
            info.current_service_tier = tier
    return info


def extract_tool_usage(messages: list[Message]) -> ToolUsage:
    usage = ToolUsage()
    for message in messages:
        if message.role != "assistant":
            continue
        if isinstance(message.content, str):
            for match in _TOOL_MARKER.finditer(message.content):
                name = match.group(1).strip()
                usage.tool_stats[name] = usage.tool_stats.get(name, 0) + 1
                usage.timeline.append(ToolInvocation(name, message.timestamp))
        for block in message.tool_uses():
            name = block.get("name") or "Unknown Tool"
            usage.tool_stats[name] = usage.tool_stats.get(name, 0) + 1
            params = block.get("input") if isinstance(block.get("input"), dict) else {}
            usage.timeline.append(ToolInvocation(name, message.timestamp, params))
    usage.timeline.sort(key=lambda t: t.timestamp)
    return usage


def _classify_assistant(message: Message) -> str:
    if isinstance(message.content, str):
        text = message.content
        if "[Tool:" in text or "tool_use" in text:
            return "tool"
        if "error" in text or "Error" in text or "failed" in text:
            return "error"
        return "success"
    text = message.text()
    if "error" in text or "Error" in text:
        return "error"
    if message.tool_uses():
        return "tool"
    return "success"


_TOOLTIPS = {
    "pending": "User input",
    "tool": "Tool execution",
    "error": "Error in response",
    "success": "Successful response",
}


def generate_status_squares(messages: list[Message], count: int = STATUS_SQUARE_COUNT) -> list[StatusSquare]:
    """One square per recent message, oldest first."""
    ordered = sorted(messages, key=lambda m: m.timestamp)
    recent = ordered[-count:]
    offset = len(ordered) - len(recent)
    squares = []
    for index, message in enumerate(recent, start=1):
        kind = "pending" if message.role == "user" else _classify_assistant(message)
        squares.append(StatusSquare(kind, f"Message #{offset + index}: {_TOOLTIPS[kind]}"))
    return squares


def format_bytes(size: int | float) -> str:
    """Human-readable size, e.g. ``1.5 KB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    exponent = 0
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[exponent]}"
