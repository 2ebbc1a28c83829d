"""Usage-window (session) accounting.

The monitored CLI meters usage in fixed windows that open with a user
prompt. This module rebuilds those windows from conversation records,
weighs the prompts inside them, works out the subscription plan in use and
raises quota warnings.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from convopulse.analysis.messages import Usage

if TYPE_CHECKING:
    from convopulse.analysis.conversation import Conversation
    from convopulse.analysis.session_info import ExternalSessionInfo

SESSION_DURATION = timedelta(hours=5)
MONTHLY_SESSION_LIMIT = 50
TIME_WARNING_THRESHOLD = timedelta(minutes=30)
AVERAGE_MESSAGE_TOKENS = 500
MIN_WEIGHT = 0.1
MAX_WEIGHT = 5.0


@dataclass(frozen=True)
class PlanLimits:
    tier: str
    name: str
    messages_per_session: int | None
    monthly_price: int
    has_limits: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "messagesPerSession": self.messages_per_session,
            "monthlyPrice": self.monthly_price,
            "hasSessionLimits": self.has_limits,
        }


PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits("free", "Free Plan", None, 0, False),
    "standard": PlanLimits("standard", "Pro Plan", 45, 20, True),
    "max": PlanLimits("max", "Max Plan (5x)", 225, 100, True),
    "premium": PlanLimits("premium", "Max Plan (20x)", 900, 200, True),
}


@dataclass
class TimelineMessage:
    """A message reduced to what window accounting needs."""

    timestamp: datetime
    role: str
    conversation_id: str
    usage: Usage | None = None
    estimated: bool = False


_P = TypeVar("_P", bound=TimelineMessage)


@dataclass
class Window(Generic[_P]):
    start: datetime
    end: datetime
    members: list[_P] = field(default_factory=list)


def partition_windows(
    points: Iterable[_P],
    duration: timedelta = SESSION_DURATION,
    now: datetime | None = None,
) -> list[Window[_P]]:
    """Split a timeline into non-overlapping usage windows, oldest first.

    A window opens at a user message and spans ``[start, start + duration)``.
    Any message landing inside the span pushes the end out to
    ``message + duration``. Messages after the end that are not user
    messages belong to no window; the next user message opens a new one.
    Windows never open after ``now``.
    """
    windows: list[Window[_P]] = []
    current: Window[_P] | None = None
    for point in sorted(points, key=lambda p: p.timestamp):
        if current is not None and point.timestamp < current.end:
            current.members.append(point)
            current.end = max(current.end, point.timestamp + duration)
            continue
        if point.role != "user":
            continue
        if now is not None and point.timestamp > now:
            break
        current = Window(point.timestamp, point.timestamp + duration, [point])
        windows.append(current)
    return windows


def message_weight(usage: Usage | None) -> float:
    """Relative cost of a prompt; 1.0 is an average message."""
    if usage is None or not usage.input_tokens:
        return 1.0
    return min(max(MIN_WEIGHT, usage.prompt_tokens / AVERAGE_MESSAGE_TOKENS), MAX_WEIGHT)


@dataclass
class SessionUsage:
    message_count: int = 0
    total_weight: float = 0.0
    short_messages: int = 0
    long_messages: int = 0

    @property
    def average_weight(self) -> float:
        return self.total_weight / self.message_count if self.message_count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageCount": self.message_count,
            "totalWeight": self.total_weight,
            "shortMessages": self.short_messages,
            "longMessages": self.long_messages,
            "averageWeight": self.average_weight,
        }


def calculate_session_usage(user_messages: Sequence[TimelineMessage]) -> SessionUsage:
    result = SessionUsage(message_count=len(user_messages))
    for message in user_messages:
        weight = message_weight(message.usage)
        result.total_weight += weight
        if weight < 0.5:
            result.short_messages += 1
        elif weight > 2.0:
            result.long_messages += 1
    return result


@dataclass
class SessionTokens:
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_creation + self.cache_read

    def add(self, usage: Usage) -> None:
        self.input += usage.input_tokens
        self.output += usage.output_tokens
        self.cache_creation += usage.cache_creation_input_tokens
        self.cache_read += usage.cache_read_input_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cacheCreation": self.cache_creation,
            "cacheRead": self.cache_read,
            "total": self.total,
        }


@dataclass
class Session:
    id: str
    start_time: datetime
    end_time: datetime
    messages: list[TimelineMessage]
    token_usage: SessionTokens
    conversations: list[str]
    usage: SessionUsage
    service_tier: str | None = None
    is_active: bool = False
    time_remaining: timedelta = timedelta(0)

    @property
    def message_count(self) -> int:
        return self.usage.message_count

    @property
    def message_weight(self) -> float:
        return self.usage.total_weight

    @property
    def conversation_count(self) -> int:
        return len(self.conversations)

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "tokenUsage": self.token_usage.to_dict(),
            "conversations": list(self.conversations),
            "conversationCount": self.conversation_count,
            "serviceTier": self.service_tier,
            "messageCount": self.message_count,
            "messageWeight": self.message_weight,
            "usageDetails": self.usage.to_dict(),
            "isActive": self.is_active,
            "timeRemaining": int(self.time_remaining.total_seconds() * 1000),
            "duration": int(self.duration.total_seconds() * 1000),
        }


@dataclass
class UserPlan:
    tier: str
    plan_type: str
    all_tiers: list[str]
    confidence: str  # "high" when a tier was observed, else "low"
    last_detected: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "planType": self.plan_type,
            "allTiers": list(self.all_tiers),
            "confidence": self.confidence,
            "lastDetected": self.last_detected.isoformat() if self.last_detected else None,
        }


@dataclass
class MonthlyUsage:
    session_count: int
    total_tokens: int
    total_messages: int
    remaining_sessions: int

    @property
    def average_tokens_per_session(self) -> int:
        return round(self.total_tokens / self.session_count) if self.session_count else 0

    @property
    def average_messages_per_session(self) -> int:
        return round(self.total_messages / self.session_count) if self.session_count else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionCount": self.session_count,
            "totalTokens": self.total_tokens,
            "totalMessages": self.total_messages,
            "remainingSessions": self.remaining_sessions,
            "averageTokensPerSession": self.average_tokens_per_session,
            "averageMessagesPerSession": self.average_messages_per_session,
        }


@dataclass
class UsageWarning:
    type: str
    level: str
    message: str
    time_remaining: timedelta | None = None
    remaining_sessions: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "level": self.level, "message": self.message}
        if self.time_remaining is not None:
            data["timeRemaining"] = int(self.time_remaining.total_seconds() * 1000)
        if self.remaining_sessions is not None:
            data["remainingSessions"] = self.remaining_sessions
        return data


@dataclass
class SessionAnalysis:
    sessions: list[Session]
    current_session: Session | None
    monthly_usage: MonthlyUsage
    user_plan: UserPlan
    limits: PlanLimits
    warnings: list[UsageWarning]
    external_info: ExternalSessionInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions": [s.to_dict() for s in self.sessions],
            "currentSession": self.current_session.to_dict() if self.current_session else None,
            "monthlyUsage": self.monthly_usage.to_dict(),
            "userPlan": self.user_plan.to_dict(),
            "limits": self.limits.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "claudeSessionInfo": self.external_info.to_dict() if self.external_info else None,
        }


def format_time_remaining(remaining: timedelta) -> str:
    """``"2h 5m"``, ``"45m"`` or ``"0m"``."""
    total_seconds = int(remaining.total_seconds())
    if total_seconds <= 0:
        return "0m"
    hours, rest = divmod(total_seconds, 3600)
    minutes = rest // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def estimate_timeline(conversation: Conversation) -> list[TimelineMessage]:
    """Spread ``message_count`` messages evenly between creation and last write.

    Roles alternate user/assistant starting with user, and each message
    carries an equal share of the conversation's recorded tokens. The times
    are an approximation; they only decide which window a message lands in.
    """
    count = conversation.message_count
    if count <= 0:
        return []
    start = conversation.created
    step = (conversation.last_modified - start) / count
    totals = conversation.token_usage
    share = Usage(
        input_tokens=totals.input_tokens // count,
        output_tokens=totals.output_tokens // count,
        cache_creation_input_tokens=totals.cache_creation_tokens // count,
        cache_read_input_tokens=totals.cache_read_tokens // count,
        service_tier=None,
    )
    return [
        TimelineMessage(
            timestamp=start + step * i,
            role="user" if i % 2 == 0 else "assistant",
            conversation_id=conversation.id,
            usage=share if totals.messages_with_usage else None,
            estimated=True,
        )
        for i in range(count)
    ]


def conversation_timeline(conversation: Conversation) -> list[TimelineMessage]:
    """Real message times when the record carries its messages, else an estimate."""
    if conversation.messages is not None:
        return [
            TimelineMessage(m.timestamp, m.role, conversation.id, m.usage)
            for m in conversation.messages
        ]
    return estimate_timeline(conversation)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionAnalyzer:
    """Builds usage windows, plan detection and warnings from conversations.

    Example:
        analyzer = SessionAnalyzer()
        analysis = analyzer.analyze_session_data(conversations, external_info)
        timer = analyzer.get_session_timer_data(analysis)
    """

    def __init__(
        self,
        window: timedelta = SESSION_DURATION,
        monthly_session_limit: int = MONTHLY_SESSION_LIMIT,
        default_plan: str = "standard",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.window = window
        self.monthly_session_limit = monthly_session_limit
        self.default_plan = default_plan if default_plan in PLAN_LIMITS else "standard"
        self._clock = clock

    def analyze_session_data(
        self,
        conversations: Sequence[Conversation],
        external_info: ExternalSessionInfo | None = None,
        now: datetime | None = None,
    ) -> SessionAnalysis:
        now = now or self._clock()
        if external_info is not None:
            sessions = self.extract_sessions_from_external(conversations, external_info, now)
            current = sessions[0] if sessions and not external_info.is_expired else None
        else:
            sessions = self.extract_sessions(conversations, now)
            current = next((s for s in sessions if s.is_active), None)

        monthly = self.calculate_monthly_usage(sessions, now)
        plan = self.detect_user_plan(conversations)
        limits = PLAN_LIMITS.get(plan.plan_type, PLAN_LIMITS["standard"])
        return SessionAnalysis(
            sessions=sessions,
            current_session=current,
            monthly_usage=monthly,
            user_plan=plan,
            limits=limits,
            warnings=self.generate_warnings(current, monthly, limits),
            external_info=external_info,
        )

    def _timeline(self, conversations: Sequence[Conversation]) -> list[TimelineMessage]:
        points: list[TimelineMessage] = []
        for conversation in conversations:
            points.extend(conversation_timeline(conversation))
        points.sort(key=lambda p: p.timestamp)
        return points

    def _build_session(
        self,
        session_id: str,
        start: datetime,
        end: datetime,
        members: list[TimelineMessage],
    ) -> Session:
        tokens = SessionTokens()
        tier: str | None = None
        conversations: list[str] = []
        for member in members:
            if member.conversation_id not in conversations:
                conversations.append(member.conversation_id)
            if member.usage is not None:
                tokens.add(member.usage)
                tier = member.usage.service_tier or tier
        users = [m for m in members if m.role == "user"]
        return Session(
            id=session_id,
            start_time=start,
            end_time=end,
            messages=members,
            token_usage=tokens,
            conversations=conversations,
            usage=calculate_session_usage(users),
            service_tier=tier,
        )

    def extract_sessions(self, conversations: Sequence[Conversation], now: datetime | None = None) -> list[Session]:
        """Usage windows, most recent first."""
        now = now or self._clock()
        windows = partition_windows(self._timeline(conversations), self.window, now)
        sessions = []
        for number, window in enumerate(windows, start=1):
            session = self._build_session(f"session_{number}", window.start, window.end, window.members)
            session.is_active = window.start <= now < window.end
            session.time_remaining = max(timedelta(0), window.end - now) if session.is_active else timedelta(0)
            sessions.append(session)
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions

    def extract_sessions_from_external(
        self,
        conversations: Sequence[Conversation],
        info: ExternalSessionInfo,
        now: datetime | None = None,
    ) -> list[Session]:
        """The single window reported by the CLI itself, if any message falls in it."""
        now = now or self._clock()
        timeline = self._timeline(conversations)
        end = info.start_time + info.session_limit

        first_user = next((p for p in timeline if p.role == "user" and p.timestamp >= info.start_time), None)
        effective_start = first_user.timestamp if first_user else info.start_time
        members = [p for p in timeline if effective_start <= p.timestamp < end]
        if not members:
            return []

        session = self._build_session(f"claude_session_{info.session_id[:8]}", effective_start, end, members)
        session.is_active = info.start_time <= now < end and not info.is_expired
        session.time_remaining = max(timedelta(0), info.time_remaining)
        return [session]

    def calculate_monthly_usage(self, sessions: Sequence[Session], now: datetime | None = None) -> MonthlyUsage:
        now = now or self._clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        monthly = [s for s in sessions if s.start_time >= month_start]
        return MonthlyUsage(
            session_count=len(monthly),
            total_tokens=sum(s.token_usage.total for s in monthly),
            total_messages=sum(s.message_count for s in monthly),
            remaining_sessions=max(0, self.monthly_session_limit - len(monthly)),
        )

    def detect_user_plan(self, conversations: Sequence[Conversation]) -> UserPlan:
        """Plan implied by the most recently observed ``service_tier``."""
        tiers: list[str] = []
        latest: tuple[datetime, str] | None = None

        def observe(tier: str | None, when: datetime) -> None:
            nonlocal latest
            if not tier or tier == "Unknown":
                return
            if tier not in tiers:
                tiers.append(tier)
            if latest is None or when > latest[0]:
                latest = (when, tier)

        for conversation in conversations:
            if conversation.messages is not None:
                for message in conversation.messages:
                    if message.usage is not None:
                        observe(message.usage.service_tier, message.timestamp)
            else:
                for tier in conversation.model_info.service_tiers:
                    observe(tier, conversation.last_modified)
                observe(conversation.model_info.current_service_tier, conversation.last_modified)

        tier = latest[1] if latest else self.default_plan
        return UserPlan(
            tier=tier,
            plan_type=tier if tier in PLAN_LIMITS else "standard",
            all_tiers=tiers,
            confidence="high" if latest else "low",
            last_detected=latest[0] if latest else None,
        )

    def generate_warnings(
        self,
        current: Session | None,
        monthly: MonthlyUsage,
        limits: PlanLimits,
    ) -> list[UsageWarning]:
        warnings: list[UsageWarning] = []

        if current is not None:
            if limits.has_limits and limits.messages_per_session:
                used, cap = current.message_count, limits.messages_per_session
                progress = used / cap
                if progress >= 0.9:
                    warnings.append(UsageWarning(
                        "session_limit_critical",
                        "error",
                        f"You're near your session message limit ({used}/{cap})",
                        time_remaining=current.time_remaining,
                    ))
                elif progress >= 0.75:
                    warnings.append(UsageWarning(
                        "session_limit_warning",
                        "warning",
                        f"75% of session messages used ({used}/{cap})",
                        time_remaining=current.time_remaining,
                    ))
            if current.time_remaining < TIME_WARNING_THRESHOLD:
                minutes = round(current.time_remaining.total_seconds() / 60)
                warnings.append(UsageWarning(
                    "session_time_warning",
                    "info",
                    f"Session expires in {minutes} minutes",
                    time_remaining=current.time_remaining,
                ))

        limit = self.monthly_session_limit
        progress = monthly.session_count / limit if limit else 0.0
        if progress >= 0.9:
            warnings.append(UsageWarning(
                "monthly_limit_critical",
                "error",
                f"You're near your monthly session limit ({monthly.session_count}/{limit})",
                remaining_sessions=monthly.remaining_sessions,
            ))
        elif progress >= 0.75:
            warnings.append(UsageWarning(
                "monthly_limit_warning",
                "warning",
                f"75% of monthly sessions used ({monthly.session_count}/{limit})",
                remaining_sessions=monthly.remaining_sessions,
            ))

        return warnings

    def get_session_timer_data(self, analysis: SessionAnalysis) -> dict[str, Any]:
        """Countdown and progress figures for the dashboard timer."""
        current = analysis.current_session
        if current is None:
            return {
                "hasActiveSession": False,
                "message": "No active session",
                "nextSessionAvailable": True,
            }

        limits = analysis.limits
        cap = limits.messages_per_session
        return {
            "hasActiveSession": True,
            "timeRemaining": int(current.time_remaining.total_seconds() * 1000),
            "timeRemainingFormatted": format_time_remaining(current.time_remaining),
            "messagesUsed": current.message_count,
            "messagesLimit": cap,
            "messageWeight": current.message_weight,
            "usageDetails": current.usage.to_dict(),
            "tokensUsed": current.token_usage.total,
            "sessionProgress": current.message_weight / cap * 100 if cap else 0.0,
            "sessionProgressSimple": current.message_count / cap * 100 if cap else 0.0,
            "planName": limits.name,
            "monthlySessionsUsed": analysis.monthly_usage.session_count,
            "monthlySessionsLimit": self.monthly_session_limit,
            "warnings": [w.to_dict() for w in analysis.warnings if "session" in w.type],
            "willResetAt": current.end_time.isoformat(),
        }
