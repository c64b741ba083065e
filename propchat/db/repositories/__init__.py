from propchat.db.repositories.common import Page, Pagination
from propchat.db.repositories.conversation_repository import (
    AgentConversationRow,
    ConversationRepository,
)
from propchat.db.repositories.directory_repository import DirectoryRepository, PropertyContext
from propchat.db.repositories.message_repository import MessageFilters, MessageRepository

__all__ = [
    "AgentConversationRow",
    "ConversationRepository",
    "DirectoryRepository",
    "MessageFilters",
    "MessageRepository",
    "Page",
    "Pagination",
    "PropertyContext",
]
