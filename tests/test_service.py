"""Tests for the analytics service wiring."""

from pathlib import Path

import pytest

from convopulse.analysis.conversation import AnalysisResult
from convopulse.analysis.metrics import TokenUsageSummary
from convopulse.analysis.processes import ProcessDetector
from convopulse.analysis.state import ConversationStatus
from convopulse.config import Config, PathsConfig
from convopulse.service import MAX_CONVERSATIONS, AnalyticsService, detailed_token_usage
from tests.utils import make_conversation


class NoProcesses(ProcessDetector):
    async def _run_ps(self) -> str:
        return ""


@pytest.fixture
def service(root_dir: Path, tmp_path: Path) -> AnalyticsService:
    config = Config(paths=PathsConfig(root_dir=str(root_dir), reports_dir=str(tmp_path / "reports")))
    service = AnalyticsService(config, process_detector=NoProcesses(), watch=False)
    return service


def result_of(*conversations) -> AnalysisResult:
    return AnalysisResult(conversations=list(conversations), active_projects=[], summary={})


class TestStateChanges:
    """Tests for detect_and_notify_state_changes."""

    @pytest.mark.asyncio
    async def test_first_load_notifies_nothing(self, service: AnalyticsService) -> None:
        """Without a previous result there is nothing to compare."""
        current = result_of(make_conversation("a", status=ConversationStatus.ACTIVE))
        assert await service.detect_and_notify_state_changes(None, current) == 0

    @pytest.mark.asyncio
    async def test_changed_status_notified(self, service: AnalyticsService) -> None:
        """Only conversations present in both results with a new status count."""
        previous = result_of(
            make_conversation("a", status=ConversationStatus.ACTIVE),
            make_conversation("b", status=ConversationStatus.IDLE),
        )
        current = result_of(
            make_conversation("a", status=ConversationStatus.WAITING),
            make_conversation("b", status=ConversationStatus.IDLE),
            make_conversation("c", status=ConversationStatus.ACTIVE),
        )

        assert await service.detect_and_notify_state_changes(previous, current) == 1

        history = service.notifications.get_history("conversation_state_change")
        assert len(history) == 1
        assert history[0].payload["conversationId"] == "a"
        assert history[0].payload["oldState"] == "active"
        assert history[0].payload["newState"] == "waiting"
        assert history[0].payload["metadata"]["project"] == "proj"


class TestPayloads:
    """Tests for payload builders."""

    def test_empty_data_payload(self, service: AnalyticsService) -> None:
        """Before loading the payload is empty."""
        payload = service.data_payload()
        assert payload["conversations"] == []
        assert payload["activeProjects"] == []

    def test_conversations_capped(self, service: AnalyticsService) -> None:
        """Data payloads carry at most the newest conversations."""
        service.data = result_of(*(make_conversation(f"c{n}") for n in range(MAX_CONVERSATIONS + 5)))

        payload = service.data_payload()

        assert len(payload["conversations"]) == MAX_CONVERSATIONS
        assert payload["sessionData"] is None

    def test_detailed_token_usage(self) -> None:
        """Token categories are summed across conversations."""
        first = make_conversation("a", token_usage=TokenUsageSummary(input_tokens=10, output_tokens=5))
        second = make_conversation("b", token_usage=TokenUsageSummary(cache_read_tokens=7, total_messages=3))

        totals = detailed_token_usage([first, second])

        assert totals["inputTokens"] == 10
        assert totals["cacheReadTokens"] == 7
        assert totals["totalMessages"] == 3
        assert totals["total"] == 22

    def test_realtime_without_data(self, service: AnalyticsService) -> None:
        """Realtime stats always carry a timestamp."""
        assert set(service.realtime_payload()) == {"timestamp"}

    @pytest.mark.asyncio
    async def test_load_then_snapshot(self, service: AnalyticsService, tmp_path: Path) -> None:
        """A snapshot of an empty root still writes a report."""
        path = await service.write_snapshot()

        assert service.data is not None
        assert path.parent == tmp_path / "reports"
