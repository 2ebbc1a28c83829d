"""ConvoPulse: live analytics over local assistant conversation logs."""

__version__ = "0.1.0"

# Public API
from convopulse.analysis import (
    Conversation,
    ConversationAnalyzer,
    ConversationState,
    ConversationStatus,
    ProcessDetector,
    SessionAnalyzer,
    StateCalculator,
)
from convopulse.cache import DataCache
from convopulse.config import Config, load_config
from convopulse.dashboard import DashboardServer, WebSocketServer, create_app
from convopulse.errors import ConversationNotFoundError, ConvoPulseError
from convopulse.notifications import NotificationManager
from convopulse.service import AnalyticsService
from convopulse.watching import FileWatcher

__all__ = [
    "__version__",
    # Entry point
    "AnalyticsService",
    "Config",
    "load_config",
    # Components
    "ConversationAnalyzer",
    "DataCache",
    "FileWatcher",
    "NotificationManager",
    "ProcessDetector",
    "SessionAnalyzer",
    "StateCalculator",
    "WebSocketServer",
    "DashboardServer",
    "create_app",
    # Types
    "Conversation",
    "ConversationState",
    "ConversationStatus",
    # Errors
    "ConvoPulseError",
    "ConversationNotFoundError",
]
