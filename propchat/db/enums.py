from __future__ import annotations

from enum import StrEnum


class UserType(StrEnum):
    AGENT = "AGENT"
    CLIENT = "CLIENT"


class AgentStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ConversationStatus(StrEnum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    CLOSED = "CLOSED"


class MessageType(StrEnum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


def counterpart(user_type: UserType) -> UserType:
    return UserType.CLIENT if user_type == UserType.AGENT else UserType.AGENT
