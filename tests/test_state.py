"""Tests for conversation state and status classification."""

import itertools
from datetime import datetime, timedelta

import pytest

from convopulse.analysis.conversation import RunningProcess
from convopulse.analysis.messages import correlate_entries
from convopulse.analysis.state import (
    ConversationState,
    ConversationStatus,
    StateCalculator,
    StateInputs,
    StateThresholds,
    classify_state,
    classify_status,
    state_class,
)
from tests.utils import assistant_entry, iso, make_conversation, user_entry


def inputs(
    process: bool = False,
    role: str | None = None,
    message_age: float | None = None,
    file_age: float = 0.0,
    has_messages: bool | None = None,
) -> StateInputs:
    if has_messages is None:
        has_messages = role is not None or message_age is not None
    return StateInputs(
        has_active_process=process,
        has_messages=has_messages,
        last_role=role,
        message_age=message_age,
        file_age=file_age,
    )


def process(working_dir: str = "/home/dev/proj", active: bool = True) -> RunningProcess:
    return RunningProcess(pid="4242", command="claude --cwd " + working_dir, working_dir=working_dir,
                          has_active_command=active)


class TestClassifyStateWithProcess:
    """State rules when a CLI process is attached."""

    @pytest.mark.parametrize(
        ("message_age", "expected"),
        [
            (10, ConversationState.WORKING),
            (59, ConversationState.WORKING),
            (60, ConversationState.AWAITING_RESPONSE),
            (3600, ConversationState.AWAITING_RESPONSE),
        ],
    )
    def test_last_user(self, message_age: float, expected: ConversationState) -> None:
        """A pending user prompt is worked on for a minute, then awaits a response."""
        assert classify_state(inputs(True, "user", message_age, file_age=500)) == expected

    def test_last_assistant_recent_write(self) -> None:
        """A fresh file write after an assistant turn means work in progress."""
        assert classify_state(inputs(True, "assistant", 400, file_age=10)) == ConversationState.WORKING

    def test_last_assistant_awaiting_input(self) -> None:
        """A recent assistant reply with a quiet file awaits the user."""
        assert classify_state(inputs(True, "assistant", 120, file_age=120)) == ConversationState.AWAITING_USER_INPUT

    def test_last_assistant_typing(self) -> None:
        """An old assistant reply with a live process means the user is typing."""
        assert classify_state(inputs(True, "assistant", 400, file_age=400)) == ConversationState.TYPING

    def test_no_role(self) -> None:
        """Without a known speaker only the file age counts."""
        assert classify_state(inputs(True, None, file_age=5, has_messages=False)) == ConversationState.WORKING
        assert (
            classify_state(inputs(True, None, file_age=50, has_messages=False))
            == ConversationState.AWAITING_USER_INPUT
        )


class TestClassifyStateWithoutProcess:
    """State rules with no CLI process."""

    def test_no_messages(self) -> None:
        """An empty log waits for input while fresh, then goes idle."""
        assert classify_state(inputs(file_age=10)) == ConversationState.WAITING_FOR_INPUT
        assert classify_state(inputs(file_age=301)) == ConversationState.IDLE

    @pytest.mark.parametrize(
        ("message_age", "expected"),
        [
            (30, ConversationState.WORKING),
            (120, ConversationState.AWAITING_RESPONSE),
            (301, ConversationState.TYPING),
        ],
    )
    def test_last_user(self, message_age: float, expected: ConversationState) -> None:
        """A user prompt ages from working to awaiting response to typing."""
        assert classify_state(inputs(False, "user", message_age)) == expected

    def test_last_assistant(self) -> None:
        """An assistant reply awaits input for five minutes."""
        assert classify_state(inputs(False, "assistant", 120)) == ConversationState.AWAITING_USER_INPUT
        assert classify_state(inputs(False, "assistant", 301)) == ConversationState.TYPING

    @pytest.mark.parametrize(
        ("file_age", "expected"),
        [
            (60, ConversationState.RECENTLY_ACTIVE),
            (1800, ConversationState.IDLE),
            (7200, ConversationState.INACTIVE),
        ],
    )
    def test_unknown_role_falls_back_to_file_age(self, file_age: float, expected: ConversationState) -> None:
        """Messages of no known role are classified by file age."""
        assert classify_state(inputs(False, None, 10, file_age=file_age, has_messages=True)) == expected

    def test_every_combination_has_a_label(self) -> None:
        """Classification is total over its inputs."""
        for has_process, role, age, file_age, has_messages in itertools.product(
            (True, False),
            ("user", "assistant", None),
            (None, 0.0, 30.0, 90.0, 400.0, 5000.0),
            (0.0, 40.0, 400.0, 5000.0),
            (True, False),
        ):
            state = classify_state(inputs(has_process, role, age, file_age, has_messages))
            assert isinstance(state, ConversationState)
            assert state.value

    def test_custom_thresholds(self) -> None:
        """Thresholds are taken from the passed StateThresholds."""
        fast = StateThresholds(reply_working=5)
        assert classify_state(inputs(True, "user", 10), fast) == ConversationState.AWAITING_RESPONSE


class TestClassifyStatus:
    """Tests for classify_status."""

    def test_no_messages_idle(self) -> None:
        """An empty conversation is idle."""
        assert classify_status(inputs(file_age=1)) == ConversationStatus.IDLE

    def test_stale_idle(self) -> None:
        """Anything older than an hour is idle."""
        assert classify_status(inputs(role="assistant", message_age=3601)) == ConversationStatus.IDLE

    @pytest.mark.parametrize(
        ("role", "age", "expected"),
        [
            ("user", 60, ConversationStatus.WAITING),
            ("user", 600, ConversationStatus.ACTIVE),
            ("user", 2000, ConversationStatus.IDLE),
            ("assistant", 60, ConversationStatus.ACTIVE),
            ("assistant", 600, ConversationStatus.COMPLETED),
            ("assistant", 2000, ConversationStatus.IDLE),
        ],
    )
    def test_by_last_role(self, role: str, age: float, expected: ConversationStatus) -> None:
        """Status depends on who spoke last and how long ago."""
        assert classify_status(inputs(role=role, message_age=age)) == expected

    @pytest.mark.parametrize(
        ("file_age", "expected"),
        [
            (60, ConversationStatus.ACTIVE),
            (600, ConversationStatus.COMPLETED),
            (2000, ConversationStatus.IDLE),
        ],
    )
    def test_file_age_fallback(self, file_age: float, expected: ConversationStatus) -> None:
        """Without a dated speaker the file age decides."""
        assert classify_status(inputs(file_age=file_age, has_messages=True)) == expected


class TestStateCalculator:
    """Tests for StateCalculator."""

    def test_state_from_messages(self, now: datetime) -> None:
        """The newest message drives the state."""
        messages = correlate_entries(
            [user_entry(now - timedelta(minutes=3)), assistant_entry(now - timedelta(minutes=2))]
        )
        calculator = StateCalculator(clock=lambda: now)

        state = calculator.determine_conversation_state(messages, now - timedelta(minutes=2))

        assert state == ConversationState.AWAITING_USER_INPUT

    def test_running_process_changes_state(self, now: datetime) -> None:
        """An attached process turns a fresh write into working."""
        messages = correlate_entries([assistant_entry(now - timedelta(minutes=10))])
        calculator = StateCalculator()

        with_process = calculator.determine_conversation_state(
            messages, now - timedelta(seconds=5), process(), now=now
        )
        idle_process = calculator.determine_conversation_state(
            messages, now - timedelta(seconds=5), process(active=False), now=now
        )

        assert with_process == ConversationState.WORKING
        assert idle_process == ConversationState.TYPING

    def test_accepts_raw_entries(self, now: datetime) -> None:
        """Raw log dictionaries are classified like parsed messages."""
        raw = [{"type": "user", "timestamp": iso(now - timedelta(seconds=20))}]
        state = StateCalculator().determine_conversation_state(raw, now, now=now)
        assert state == ConversationState.WORKING

    def test_status_missing_inputs_idle(self, now: datetime) -> None:
        """Missing messages or modification time yields idle."""
        calculator = StateCalculator()
        assert calculator.determine_conversation_status(None, now) == ConversationStatus.IDLE
        assert calculator.determine_conversation_status([], None) == ConversationStatus.IDLE

    def test_status_ignores_invalid_entries(self, now: datetime) -> None:
        """Entries without a role or timestamp do not count as messages."""
        calculator = StateCalculator()
        raw = [{"type": "summary"}, {"type": "user"}]
        assert calculator.determine_conversation_status(raw, now, now=now) == ConversationStatus.IDLE

    def test_status_from_messages(self, now: datetime) -> None:
        """A user prompt a minute old is waiting."""
        messages = correlate_entries([user_entry(now - timedelta(minutes=1))])
        status = StateCalculator().determine_conversation_status(messages, now, now=now)
        assert status == ConversationStatus.WAITING


class TestQuickState:
    """Tests for StateCalculator.quick_state."""

    def test_none_without_process(self, now: datetime) -> None:
        """Conversations without a matching process get no quick state."""
        conversation = make_conversation(project="proj", last_modified=now)
        other = process("/home/dev/elsewhere")
        assert StateCalculator().quick_state(conversation, [other], now) is None

    @pytest.mark.parametrize(
        ("age", "expected"),
        [
            (10, ConversationState.WORKING),
            (100, ConversationState.AWAITING_USER_INPUT),
            (400, ConversationState.TYPING),
        ],
    )
    def test_by_file_age(self, now: datetime, age: int, expected: ConversationState) -> None:
        """A matched process classifies by file age alone."""
        conversation = make_conversation(project="proj", last_modified=now - timedelta(seconds=age))
        assert StateCalculator().quick_state(conversation, [process()], now) == expected

    def test_attached_process_counts(self, now: datetime) -> None:
        """A process already on the record is enough."""
        conversation = make_conversation(project="other", last_modified=now, running_process=process())
        assert StateCalculator().quick_state(conversation, [], now) == ConversationState.WORKING


class TestStateClass:
    """Tests for state_class."""

    def test_hints(self) -> None:
        """Working and typing states map to CSS hints."""
        assert state_class(ConversationState.WORKING) == "working"
        assert state_class("User typing...") == "typing"
        assert state_class(ConversationState.IDLE) == ""
        assert StateCalculator.state_class(ConversationState.TYPING) == "typing"
