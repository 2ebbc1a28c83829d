"""Tests for snapshot files."""

import json
from datetime import datetime, timezone
from pathlib import Path

from convopulse.reports import list_snapshots, snapshot_filename, write_snapshot


class TestSnapshots:
    """Tests for writing and listing snapshots."""

    def test_filename(self) -> None:
        """Filenames carry a sortable timestamp."""
        now = datetime(2025, 6, 15, 9, 5, 7, tzinfo=timezone.utc)
        assert snapshot_filename(now) == "analytics-snapshot-20250615-090507.json"

    def test_write(self, tmp_path: Path, now: datetime) -> None:
        """Snapshots are JSON with a generation time and create their directory."""
        path = write_snapshot({"conversations": [], "when": now}, tmp_path / "reports", now)

        assert path.parent == tmp_path / "reports"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["generatedAt"] == now.isoformat()
        assert data["conversations"] == []
        assert data["when"] == str(now)
        assert not list((tmp_path / "reports").glob("*.tmp"))

    def test_list_newest_first(self, tmp_path: Path) -> None:
        """Listing ignores other files and sorts newest first."""
        early = write_snapshot({}, tmp_path, datetime(2025, 1, 1, tzinfo=timezone.utc))
        late = write_snapshot({}, tmp_path, datetime(2025, 3, 1, tzinfo=timezone.utc))
        (tmp_path / "notes.json").write_text("{}", encoding="utf-8")

        assert list_snapshots(tmp_path) == [late, early]

    def test_list_missing_directory(self, tmp_path: Path) -> None:
        """A missing directory has no snapshots."""
        assert list_snapshots(tmp_path / "missing") == []
