"""Conversation state and status classification.

Both classifiers are pure functions of a small set of inputs: whether a CLI
process is attached, who spoke last, how old that message is and how long ago
the log file was touched. ``StateCalculator`` only binds thresholds and a
clock to them.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from convopulse.analysis.messages import parse_timestamp

if TYPE_CHECKING:
    from convopulse.analysis.conversation import Conversation, RunningProcess


class ConversationState(str, Enum):
    """Human-readable activity label shown next to a conversation."""

    WORKING = "Claude Code working..."
    AWAITING_RESPONSE = "Awaiting response..."
    AWAITING_USER_INPUT = "Awaiting user input..."
    TYPING = "User typing..."
    WAITING_FOR_INPUT = "Waiting for input..."
    IDLE = "Idle"
    RECENTLY_ACTIVE = "Recently active"
    INACTIVE = "Inactive"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    IDLE = "idle"
    COMPLETED = "completed"


# Default thresholds, in seconds
REPLY_WORKING_AGE = 60.0
FILE_WORKING_AGE = 30.0
AWAITING_INPUT_AGE = 5 * 60.0
FALLBACK_IDLE_AGE = 60 * 60.0
STATUS_STALE_AGE = 60 * 60.0
STATUS_RECENT_AGE = 5 * 60.0
STATUS_ACTIVE_AGE = 30 * 60.0


@dataclass(frozen=True)
class StateThresholds:
    reply_working: float = REPLY_WORKING_AGE
    file_working: float = FILE_WORKING_AGE
    awaiting_input: float = AWAITING_INPUT_AGE
    fallback_idle: float = FALLBACK_IDLE_AGE
    status_stale: float = STATUS_STALE_AGE
    status_recent: float = STATUS_RECENT_AGE
    status_active: float = STATUS_ACTIVE_AGE


DEFAULT_THRESHOLDS = StateThresholds()


@dataclass(frozen=True)
class StateInputs:
    """Everything the state machine looks at.

    ``last_role`` is None when there are no messages, or when the newest
    entry is neither a user nor an assistant turn.
    """

    has_active_process: bool
    has_messages: bool
    last_role: str | None
    message_age: float | None
    file_age: float


def _role_of(message: Any) -> str | None:
    role = getattr(message, "role", None)
    if role is None and isinstance(message, dict):
        payload = message.get("message")
        role = payload.get("role") if isinstance(payload, dict) else None
        role = role or message.get("role") or message.get("type")
    return role if role in ("user", "assistant") else None


def _timestamp_of(message: Any) -> datetime | None:
    value = getattr(message, "timestamp", None)
    if value is None and isinstance(message, dict):
        value = message.get("timestamp")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_timestamp(value)


def _newest(messages: Iterable[Any]) -> tuple[Any, datetime] | None:
    newest: tuple[Any, datetime] | None = None
    for message in messages:
        ts = _timestamp_of(message)
        if ts is None:
            continue
        if newest is None or ts >= newest[1]:
            newest = (message, ts)
    return newest


def gather_inputs(
    messages: Sequence[Any],
    last_modified: datetime,
    running_process: RunningProcess | None,
    now: datetime,
) -> StateInputs:
    file_age = (now - last_modified).total_seconds()
    newest = _newest(messages)
    if newest is None:
        return StateInputs(
            has_active_process=bool(running_process and running_process.has_active_command),
            has_messages=bool(messages),
            last_role=None,
            message_age=None,
            file_age=file_age,
        )
    message, ts = newest
    return StateInputs(
        has_active_process=bool(running_process and running_process.has_active_command),
        has_messages=True,
        last_role=_role_of(message),
        message_age=(now - ts).total_seconds(),
        file_age=file_age,
    )


def classify_state(inputs: StateInputs, thresholds: StateThresholds = DEFAULT_THRESHOLDS) -> ConversationState:
    t = thresholds
    age = inputs.message_age or 0.0

    if inputs.has_active_process:
        if inputs.last_role == "user":
            return ConversationState.WORKING if age < t.reply_working else ConversationState.AWAITING_RESPONSE
        if inputs.last_role == "assistant":
            if inputs.file_age < t.file_working:
                return ConversationState.WORKING
            return ConversationState.AWAITING_USER_INPUT if age < t.awaiting_input else ConversationState.TYPING
        if inputs.file_age < t.file_working:
            return ConversationState.WORKING
        return ConversationState.AWAITING_USER_INPUT

    if not inputs.has_messages:
        return ConversationState.WAITING_FOR_INPUT if inputs.file_age < t.awaiting_input else ConversationState.IDLE

    if inputs.last_role == "user":
        if age < t.reply_working:
            return ConversationState.WORKING
        if age < t.awaiting_input:
            return ConversationState.AWAITING_RESPONSE
        return ConversationState.TYPING
    if inputs.last_role == "assistant":
        return ConversationState.AWAITING_USER_INPUT if age < t.awaiting_input else ConversationState.TYPING

    if inputs.file_age < t.awaiting_input:
        return ConversationState.RECENTLY_ACTIVE
    if inputs.file_age < t.fallback_idle:
        return ConversationState.IDLE
    return ConversationState.INACTIVE


def classify_status(inputs: StateInputs, thresholds: StateThresholds = DEFAULT_THRESHOLDS) -> ConversationStatus:
    t = thresholds
    if not inputs.has_messages:
        return ConversationStatus.IDLE

    if inputs.last_role is not None and inputs.message_age is not None:
        age = inputs.message_age
        if age > t.status_stale:
            return ConversationStatus.IDLE
        if inputs.last_role == "user":
            if age < t.status_recent:
                return ConversationStatus.WAITING
            return ConversationStatus.ACTIVE if age < t.status_active else ConversationStatus.IDLE
        if age < t.status_recent:
            return ConversationStatus.ACTIVE
        return ConversationStatus.COMPLETED if age < t.status_active else ConversationStatus.IDLE

    if inputs.file_age < t.status_recent:
        return ConversationStatus.ACTIVE
    if inputs.file_age < t.status_active:
        return ConversationStatus.COMPLETED
    return ConversationStatus.IDLE


def state_class(state: ConversationState | str) -> str:
    """CSS hint for the dashboard: ``working``, ``typing`` or empty."""
    label = state.value if isinstance(state, ConversationState) else state
    lowered = label.lower()
    if "working" in lowered:
        return "working"
    if "typing" in lowered:
        return "typing"
    return ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateCalculator:
    """Binds thresholds and a clock to the classifiers.

    Example:
        calculator = StateCalculator()
        state = calculator.determine_conversation_state(messages, last_modified)
    """

    def __init__(
        self,
        thresholds: StateThresholds = DEFAULT_THRESHOLDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.thresholds = thresholds
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def determine_conversation_state(
        self,
        messages: Sequence[Any],
        last_modified: datetime,
        running_process: RunningProcess | None = None,
        now: datetime | None = None,
    ) -> ConversationState:
        inputs = gather_inputs(messages, last_modified, running_process, now or self._clock())
        return classify_state(inputs, self.thresholds)

    def determine_conversation_status(
        self,
        messages: Sequence[Any] | None,
        last_modified: datetime | None,
        now: datetime | None = None,
    ) -> ConversationStatus:
        if messages is None or last_modified is None:
            return ConversationStatus.IDLE
        # Entries without a role or timestamp never count
        valid = [m for m in messages if _role_of(m) and _timestamp_of(m)]
        if not valid:
            return ConversationStatus.IDLE
        inputs = gather_inputs(valid, last_modified, None, now or self._clock())
        return classify_status(inputs, self.thresholds)

    def quick_state(
        self,
        conversation: Conversation,
        processes: Iterable[RunningProcess],
        now: datetime | None = None,
    ) -> ConversationState | None:
        """File-age-only state for conversations with an attached process.

        Returns None when no process belongs to the conversation.
        """
        project = conversation.project
        attached = conversation.running_process is not None or any(
            project in process.working_dir or project in process.command for process in processes
        )
        if not attached:
            return None
        age = ((now or self._clock()) - conversation.last_modified).total_seconds()
        if age < self.thresholds.file_working:
            return ConversationState.WORKING
        if age < self.thresholds.awaiting_input:
            return ConversationState.AWAITING_USER_INPUT
        return ConversationState.TYPING

    @staticmethod
    def state_class(state: ConversationState | str) -> str:
        return state_class(state)
