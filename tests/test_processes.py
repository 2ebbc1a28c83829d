"""Tests for running CLI process detection."""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from convopulse.analysis.conversation import UNKNOWN_WORKING_DIR, RunningProcess
from convopulse.analysis.messages import correlate_entries
from convopulse.analysis.processes import ProcessDetector, parse_ps_output
from convopulse.analysis.state import ConversationState, ConversationStatus, StateCalculator
from tests.utils import assistant_entry, make_conversation

PS_OUTPUT = """\
  101 dev      /usr/local/bin/claude --cwd /home/dev/api
  103 dev      claude
  104 dev      /opt/chrome_crashpad_handler --claude
  105 dev      vim claude.txt
  106 dev      claude-analytics --serve
  107 dev      /usr/local/bin/claude --cwd=/srv/other --resume
garbage
"""


class StubDetector(ProcessDetector):
    """ProcessDetector fed from canned ps output."""

    def __init__(self, output: str = PS_OUTPUT, fail: bool = False, **kwargs) -> None:
        super().__init__(**kwargs)
        self.output = output
        self.fail = fail
        self.calls = 0

    async def _run_ps(self) -> str:
        self.calls += 1
        if self.fail:
            raise FileNotFoundError("ps")
        return self.output


class FakeClock:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


class TestParsePsOutput:
    """Tests for parse_ps_output."""

    def test_filters_cli_processes(self) -> None:
        """Only processes whose executable is the CLI are kept."""
        processes = parse_ps_output(PS_OUTPUT)
        assert [p.pid for p in processes] == ["101", "103", "107"]

    def test_working_directory(self) -> None:
        """--cwd is read in both spellings; otherwise the directory is unknown."""
        by_pid = {p.pid: p for p in parse_ps_output(PS_OUTPUT)}
        assert by_pid["101"].working_dir == "/home/dev/api"
        assert by_pid["107"].working_dir == "/srv/other"
        assert by_pid["103"].working_dir == "unknown"

    def test_unknown_directory_matches_record_default(self) -> None:
        """Parsed and default records use the same unknown marker."""
        parsed = parse_ps_output("  103 dev claude\n")[0]
        assert parsed.working_dir == UNKNOWN_WORKING_DIR
        assert RunningProcess(pid="1", command="claude").working_dir == UNKNOWN_WORKING_DIR

    def test_unbalanced_quotes(self) -> None:
        """Command lines that shlex cannot split still parse."""
        processes = parse_ps_output("  200 dev claude --prompt \"unterminated\n")
        assert [p.pid for p in processes] == ["200"]

    def test_custom_executable(self) -> None:
        """The executable name is configurable."""
        processes = parse_ps_output("  1 dev /bin/assistant --cwd /x\n", executable="assistant")
        assert processes[0].working_dir == "/x"


class TestDetectRunningProcesses:
    """Tests for ProcessDetector.detect_running_processes."""

    @pytest.mark.asyncio
    async def test_listing_cached_for_ttl(self) -> None:
        """Calls within the TTL reuse one ps run."""
        clock = FakeClock()
        detector = StubDetector(ttl=0.5, clock=clock)

        await detector.detect_running_processes()
        await detector.detect_running_processes()
        assert detector.calls == 1
        assert len(detector.get_cached_processes()) == 3

        clock.value += 1
        assert detector.get_cached_processes() == []
        await detector.detect_running_processes()
        assert detector.calls == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self) -> None:
        """clear_cache forces the next call to run ps."""
        detector = StubDetector(ttl=60)
        await detector.detect_running_processes()
        detector.clear_cache()
        await detector.detect_running_processes()
        assert detector.calls == 2

    @pytest.mark.asyncio
    async def test_ps_failure(self) -> None:
        """A failing ps yields no processes."""
        detector = StubDetector(fail=True)
        assert await detector.detect_running_processes() == []
        assert await detector.has_active_processes() is False


class TestEnrichment:
    """Tests for ProcessDetector.enrich_with_running_processes."""

    @pytest.mark.asyncio
    async def test_matches_by_project(self, now: datetime, tmp_path: Path) -> None:
        """Processes attach to the conversation whose project they run in."""
        api = make_conversation("c-api", project="api", last_modified=now - timedelta(seconds=10))
        web = make_conversation("c-web", project="web", last_modified=now - timedelta(seconds=5))
        detector = StubDetector(PS_OUTPUT.replace("  103 dev      claude\n", ""))

        result = await detector.enrich_with_running_processes(
            [api, web], tmp_path, StateCalculator(clock=lambda: now)
        )

        assert result.active_process_count == 2
        assert api.running_process is not None
        assert api.running_process.pid == "101"
        assert api.status == ConversationStatus.ACTIVE
        assert api.conversation_state == ConversationState.WORKING
        assert web.running_process is None
        assert [p.pid for p in result.orphan_processes] == ["107"]

    @pytest.mark.asyncio
    async def test_unknown_directory_goes_to_newest(self, now: datetime, tmp_path: Path) -> None:
        """A process without --cwd attaches to the most recent conversation."""
        older = make_conversation("old", project="zzz", last_modified=now - timedelta(hours=1))
        newest = make_conversation("new", project="yyy", last_modified=now)
        detector = StubDetector("  103 dev claude\n")

        result = await detector.enrich_with_running_processes([older, newest], tmp_path, StateCalculator())

        assert newest.running_process is not None
        assert newest.running_process.pid == "103"
        assert older.running_process is None
        assert result.orphan_processes == []

    @pytest.mark.asyncio
    async def test_no_processes_clears_attachments(self, now: datetime, tmp_path: Path) -> None:
        """Without processes every stale attachment is removed."""
        conversation = make_conversation(
            project="api", running_process=RunningProcess(pid="9", command="claude")
        )
        result = await StubDetector("").enrich_with_running_processes([conversation], tmp_path, StateCalculator())

        assert conversation.running_process is None
        assert result.active_process_count == 0

    @pytest.mark.asyncio
    async def test_state_uses_loaded_messages(self, now: datetime, tmp_path: Path) -> None:
        """Messages are reloaded through the loader to recompute state."""
        loaded: list[str] = []
        messages = correlate_entries([assistant_entry(now - timedelta(minutes=10))])

        async def loader(path: str):
            loaded.append(path)
            return messages

        conversation = make_conversation(project="api", last_modified=now - timedelta(minutes=10))
        detector = StubDetector(message_loader=loader)

        await detector.enrich_with_running_processes([conversation], tmp_path, StateCalculator(clock=lambda: now))

        assert loaded == [conversation.file_path]
        assert conversation.conversation_state == ConversationState.TYPING
