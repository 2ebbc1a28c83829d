"""Exception types raised by convopulse."""

from __future__ import annotations


class ConvoPulseError(Exception):
    """Base class for convopulse errors."""


class ConversationNotFoundError(ConvoPulseError):
    """Raised when a conversation id does not map to a log file."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id
