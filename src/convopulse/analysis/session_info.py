"""Reader for the CLI's own session record.

The CLI keeps a small JSON file (``statsig.session_id.<hash>``) holding the
start time of its current usage session. When present it is a better anchor
for the active window than anything reconstructed from logs.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from convopulse.analysis.sessions import format_time_remaining
from convopulse.logging import get_logger

log = get_logger("session_info")

SESSION_FILE_PREFIX = "statsig.session_id."
DEFAULT_SESSION_LIMIT = timedelta(hours=2, minutes=21)


@dataclass(frozen=True)
class ExternalSessionInfo:
    session_id: str
    start_time: datetime
    last_update: datetime | None
    session_limit: timedelta
    now: datetime

    @property
    def session_duration(self) -> timedelta:
        return self.now - self.start_time

    @property
    def time_remaining(self) -> timedelta:
        return self.session_limit - self.session_duration

    @property
    def is_expired(self) -> bool:
        return self.time_remaining <= timedelta(0)

    def to_dict(self) -> dict[str, Any]:
        remaining = self.time_remaining
        return {
            "hasSession": True,
            "sessionId": self.session_id,
            "startTime": int(self.start_time.timestamp() * 1000),
            "lastUpdate": int(self.last_update.timestamp() * 1000) if self.last_update else None,
            "sessionDuration": {
                "ms": int(self.session_duration.total_seconds() * 1000),
                "formatted": format_time_remaining(self.session_duration),
            },
            "estimatedTimeRemaining": {
                "ms": int(remaining.total_seconds() * 1000),
                "formatted": format_time_remaining(remaining) if not self.is_expired else "Session expired",
                "isExpired": self.is_expired,
            },
            "sessionLimit": {
                "ms": int(self.session_limit.total_seconds() * 1000),
                "formatted": format_time_remaining(self.session_limit),
            },
        }


def _from_millis(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def read_session_info(
    statsig_dir: str | os.PathLike[str],
    session_limit: timedelta = DEFAULT_SESSION_LIMIT,
    now: datetime | None = None,
) -> ExternalSessionInfo | None:
    """Load the CLI's session record, or None when there is none (blocking)."""
    directory = Path(statsig_dir)
    try:
        candidates = sorted(p for p in directory.iterdir() if p.name.startswith(SESSION_FILE_PREFIX))
    except FileNotFoundError:
        return None
    except OSError as e:
        log.warning("Cannot list %s: %s", directory, e)
        return None
    if not candidates:
        return None

    try:
        data = json.loads(candidates[0].read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Unreadable session record %s: %s", candidates[0], e)
        return None
    if not isinstance(data, dict):
        return None

    start = _from_millis(data.get("startTime"))
    if start is None:
        log.debug("Session record %s has no startTime", candidates[0])
        return None

    return ExternalSessionInfo(
        session_id=str(data.get("sessionID") or candidates[0].name[len(SESSION_FILE_PREFIX):]),
        start_time=start,
        last_update=_from_millis(data.get("lastUpdate")),
        session_limit=session_limit,
        now=now or datetime.now(timezone.utc),
    )
