"""Conversation analysis: parsing, per-file metrics, state and usage windows."""

from convopulse.analysis.conversation import (
    ActiveProject,
    AnalysisResult,
    Conversation,
    ConversationAnalyzer,
    EnrichmentResult,
    RunningProcess,
    conversation_id_for,
)
from convopulse.analysis.messages import (
    AssistantMessage,
    Message,
    ToolResult,
    Usage,
    UserMessage,
    parse_conversation_text,
    read_tail_messages,
)
from convopulse.analysis.processes import ProcessDetector
from convopulse.analysis.session_info import ExternalSessionInfo, read_session_info
from convopulse.analysis.sessions import Session, SessionAnalysis, SessionAnalyzer
from convopulse.analysis.state import (
    ConversationState,
    ConversationStatus,
    StateCalculator,
    StateThresholds,
)

__all__ = [
    "ActiveProject",
    "AnalysisResult",
    "AssistantMessage",
    "Conversation",
    "ConversationAnalyzer",
    "ConversationState",
    "ConversationStatus",
    "EnrichmentResult",
    "ExternalSessionInfo",
    "Message",
    "ProcessDetector",
    "RunningProcess",
    "Session",
    "SessionAnalysis",
    "SessionAnalyzer",
    "StateCalculator",
    "StateThresholds",
    "ToolResult",
    "Usage",
    "UserMessage",
    "conversation_id_for",
    "parse_conversation_text",
    "read_session_info",
    "read_tail_messages",
]
