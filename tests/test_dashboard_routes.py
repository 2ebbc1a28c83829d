"""Tests for the REST API and WebSocket routes."""

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from convopulse import __version__
from convopulse.analysis.processes import ProcessDetector
from convopulse.config import Config, PathsConfig
from convopulse.dashboard.routes import create_app
from convopulse.service import AnalyticsService
from tests.utils import assistant_entry, usage, user_entry, write_jsonl


class NoProcesses(ProcessDetector):
    """Detector that never sees a running CLI."""

    async def _run_ps(self) -> str:
        return ""


@pytest.fixture
def service(root_dir: Path, tmp_path: Path) -> AnalyticsService:
    now = datetime.now(timezone.utc)
    write_jsonl(
        root_dir / "projects" / "api" / "abc.jsonl",
        [
            user_entry(now - timedelta(minutes=3), cwd="/home/dev/api"),
            assistant_entry(now - timedelta(minutes=2), usage=usage(300, 200)),
        ],
        mtime=now - timedelta(minutes=2),
    )
    config = Config(paths=PathsConfig(root_dir=str(root_dir), reports_dir=str(tmp_path / "reports")))
    return AnalyticsService(config, process_detector=NoProcesses(), watch=False)


@pytest.fixture
def client(service: AnalyticsService) -> Iterator[TestClient]:
    with TestClient(create_app(service)) as test_client:
        yield test_client


class TestInfoRoutes:
    """Tests for version, cache and health routes."""

    def test_version(self, client: TestClient) -> None:
        """Version reports the package and WebSocket path."""
        response = client.get("/api/version")
        assert response.status_code == 200
        assert response.json() == {"name": "convopulse", "version": __version__, "websocket": "/ws"}

    def test_cache_stats(self, client: TestClient) -> None:
        """Cache stats are exposed."""
        response = client.get("/api/cache/stats")
        assert response.status_code == 200
        assert "hitRate" in response.json()

    def test_health(self, client: TestClient, root_dir: Path) -> None:
        """Health reports a service without watchers as healthy."""
        data = client.get("/api/system/health").json()
        assert data["status"] == "healthy"
        assert data["rootDir"] == str(root_dir)
        assert {"cache", "watcher", "websocket", "notifications"} <= set(data)


class TestDataRoutes:
    """Tests for analysis data routes."""

    def test_data_before_refresh(self, client: TestClient) -> None:
        """Before the first load the payload is empty."""
        data = client.get("/api/data").json()
        assert data["conversations"] == []
        assert "timestamp" in data

    def test_refresh_then_data(self, client: TestClient) -> None:
        """A refresh loads the logs into the data payload."""
        response = client.get("/api/refresh")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["message"] == "Data refreshed"

        data = client.get("/api/data").json()
        assert [c["id"] for c in data["conversations"]] == ["abc"]
        assert data["detailedTokenUsage"]["total"] == 500
        assert data["sessionData"] is not None

    def test_realtime(self, client: TestClient) -> None:
        """Realtime stats follow a refresh."""
        client.get("/api/refresh")
        data = client.get("/api/realtime").json()
        assert data["totalConversations"] == 1
        assert "timestamp" in data

    def test_conversation_state(self, client: TestClient) -> None:
        """Without running processes no conversation has a live state."""
        client.get("/api/refresh")
        data = client.get("/api/conversation-state").json()
        assert data["activeStates"] == []

    def test_session_data(self, client: TestClient) -> None:
        """Session data carries the timer and external session info."""
        client.get("/api/refresh")
        data = client.get("/api/session/data").json()
        assert "timer" in data
        assert data["claudeSessionInfo"] == {"hasSession": False}

    def test_conversation_detail(self, client: TestClient) -> None:
        """A known conversation returns its messages."""
        data = client.get("/api/conversations/abc").json()
        assert data["conversationId"] == "abc"
        assert data["messageCount"] == 2

    def test_unknown_conversation(self, client: TestClient) -> None:
        """An unknown conversation is a 404."""
        assert client.get("/api/conversations/nope").status_code == 404


class TestSnapshotRoutes:
    """Tests for snapshot routes."""

    def test_no_snapshots(self, client: TestClient) -> None:
        """A missing reports directory lists nothing."""
        assert client.get("/api/snapshots").json() == []

    def test_snapshot_then_list(self, client: TestClient, tmp_path: Path) -> None:
        """A written snapshot shows up in the listing."""
        response = client.post("/api/snapshot")
        assert response.status_code == 200
        path = Path(response.json()["path"])
        assert path.parent == tmp_path / "reports"
        assert path.exists()

        listing = client.get("/api/snapshots").json()
        assert listing == [{"name": path.name, "path": str(path)}]


class TestWebSocketRoute:
    """Tests for the WebSocket endpoint."""

    def test_welcome_and_ping(self, client: TestClient) -> None:
        """Clients are welcomed and answered."""
        with client.websocket_connect("/ws") as ws:
            welcome = ws.receive_json()
            assert welcome["type"] == "connection"
            assert welcome["data"]["clientId"].startswith("client_")

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"
