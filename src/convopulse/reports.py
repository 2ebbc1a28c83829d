"""On-demand analytics snapshots written as JSON files."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from convopulse.logging import get_logger

log = get_logger("reports")

SNAPSHOT_PREFIX = "analytics-snapshot-"
SNAPSHOT_SUFFIX = ".json"


def snapshot_filename(now: datetime) -> str:
    return f"{SNAPSHOT_PREFIX}{now.strftime('%Y%m%d-%H%M%S')}{SNAPSHOT_SUFFIX}"


def write_snapshot(
    payload: dict[str, Any],
    reports_dir: str | os.PathLike[str],
    now: datetime | None = None,
) -> Path:
    """Write ``payload`` to a timestamped file under ``reports_dir``."""
    now = now or datetime.now(timezone.utc)
    directory = Path(reports_dir).expanduser()
    directory.mkdir(parents=True, exist_ok=True)

    target = directory / snapshot_filename(now)
    tmp = target.with_suffix(".tmp")
    tmp.write_text(
        json.dumps({"generatedAt": now.isoformat(), **payload}, indent=2, default=str),
        encoding="utf-8",
    )
    os.replace(tmp, target)
    log.info("Wrote snapshot %s", target)
    return target


def list_snapshots(reports_dir: str | os.PathLike[str]) -> list[Path]:
    """Snapshot files, newest first."""
    directory = Path(reports_dir).expanduser()
    if not directory.is_dir():
        return []
    found = [
        p
        for p in directory.iterdir()
        if p.is_file() and p.name.startswith(SNAPSHOT_PREFIX) and p.name.endswith(SNAPSHOT_SUFFIX)
    ]
    found.sort(key=lambda p: p.name, reverse=True)
    return found
