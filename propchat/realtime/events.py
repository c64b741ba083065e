"""Wire event names and payload models for the messaging socket.

Names are shared with existing web clients and must not change. Inbound payloads
are camelCase; models accept either camelCase or snake_case field names.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from propchat.db.enums import MessageType

MAX_CONTENT_LENGTH = 5000


class ClientEvent(StrEnum):
    JOIN_PROPERTY_CONVERSATION = "join-property-conversation"
    LEAVE_PROPERTY_CONVERSATION = "leave-property-conversation"
    SEND_PROPERTY_MESSAGE = "send-property-message"
    SEND_MESSAGE = "send-message"
    MARK_MESSAGES_READ = "mark-messages-read"
    MARK_READ = "mark-read"
    JOIN_CONVERSATION = "join-conversation"
    LEAVE_CONVERSATION = "leave-conversation"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    PING = "ping"


class ServerEvent(StrEnum):
    CONNECTED = "connected"
    ERROR = "error"
    PROPERTY_CONVERSATION_JOINED = "property-conversation-joined"
    NEW_MESSAGE = "new-message"
    MESSAGE_SENT = "message-sent"
    MESSAGE_ERROR = "message-error"
    MESSAGES_MARKED_READ = "messages-marked-read"
    MESSAGE_READ = "message-read"
    READ_CONFIRMED = "read-confirmed"
    MESSAGE_NOTIFICATION = "message-notification"
    JOINED_CONVERSATION = "joined-conversation"
    PONG = "pong"
    USER_TYPING = "user-typing"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    UNREAD_COUNTS_UPDATED = "unreadCountsUpdated"
    HIERARCHICAL_UNREAD_COUNTS_UPDATED = "hierarchicalUnreadCountsUpdated"
    CLIENT_UNREAD_COUNTS_UPDATED = "clientUnreadCountsUpdated"


class WirePayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class InboundFrame(BaseModel):
    type: str = Field(min_length=1, max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict)


class PropertyRef(WirePayload):
    property_id: str = Field(min_length=1, max_length=64)


class ConversationRef(WirePayload):
    conversation_id: str = Field(min_length=1, max_length=64)


class ReadTarget(WirePayload):
    """A single message, a whole conversation, or a property's conversation."""

    property_id: str | None = Field(default=None, min_length=1, max_length=64)
    conversation_id: str | None = Field(default=None, min_length=1, max_length=64)
    message_id: str | None = Field(default=None, min_length=1, max_length=64)

    @model_validator(mode="after")
    def _has_target(self) -> ReadTarget:
        if self.property_id is None and self.conversation_id is None:
            raise ValueError("propertyId or conversationId is required")
        if self.message_id is not None and self.conversation_id is None:
            raise ValueError("messageId requires conversationId")
        return self


class _MessageBody(WirePayload):
    content: str
    type: MessageType = MessageType.TEXT

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if value is None:
            return MessageType.TEXT
        if isinstance(value, str):
            return value.strip().upper()
        return value


class SendPropertyMessage(_MessageBody):
    property_id: str = Field(min_length=1, max_length=64)


class SendConversationMessage(_MessageBody):
    conversation_id: str = Field(min_length=1, max_length=64)


class MessageView(WirePayload):
    id: str
    conversation_id: str
    sender_id: str
    sender_type: str
    content: str
    type: str
    is_read: bool
    created_at: datetime
    property_id: str | None = None


class PropertyUnreadCounts(WirePayload):
    property_id: str
    agent_unread_count: int
    client_unread_count: int


class PropertyUnreadNode(WirePayload):
    property_id: str
    address: str
    unread_count: int


class ClientUnreadNode(WirePayload):
    client_id: str
    client_name: str
    unread_count: int
    properties: list[PropertyUnreadNode] = Field(default_factory=list)


class HierarchicalUnreadCounts(WirePayload):
    total_unread: int
    clients: list[ClientUnreadNode] = Field(default_factory=list)


class ClientUnreadCounts(WirePayload):
    counts: dict[str, int] = Field(default_factory=dict)
