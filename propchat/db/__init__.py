"""Database layer modules and public helpers."""

from propchat.db.enums import AgentStatus, ConversationStatus, MessageType, UserType
from propchat.db.models import (
    Agent,
    Client,
    ConversationMessage,
    Property,
    PropertyConversation,
    Timeline,
)
from propchat.db.session import get_session, session_scope

__all__ = [
    "Agent",
    "AgentStatus",
    "Client",
    "ConversationMessage",
    "ConversationStatus",
    "MessageType",
    "Property",
    "PropertyConversation",
    "Timeline",
    "UserType",
    "get_session",
    "session_scope",
]
