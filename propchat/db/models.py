from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Column, Index, Integer, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from propchat.db.enums import AgentStatus, ConversationStatus, MessageType, UserType


def utc_now() -> datetime:
    return datetime.now(UTC)


def generate_id() -> str:
    return uuid4().hex


class Agent(SQLModel, table=True):
    __tablename__ = "agents"

    id: str = Field(
        default_factory=generate_id,
        sa_column=Column(String(length=64), primary_key=True),
    )
    email: str = Field(sa_column=Column(String(length=255), nullable=False, unique=True))
    first_name: str = Field(default="", sa_column=Column(String(length=120), nullable=False))
    last_name: str = Field(default="", sa_column=Column(String(length=120), nullable=False))
    status: AgentStatus = Field(
        default=AgentStatus.ACTIVE,
        sa_column=Column(String(length=32), nullable=False, index=True),
    )
    created_at: datetime = Field(default_factory=utc_now, nullable=False, index=True)


class Client(SQLModel, table=True):
    __tablename__ = "clients"

    id: str = Field(
        default_factory=generate_id,
        sa_column=Column(String(length=64), primary_key=True),
    )
    agent_id: str | None = Field(default=None, foreign_key="agents.id", index=True)
    first_name: str = Field(sa_column=Column(String(length=120), nullable=False))
    last_name: str = Field(default="", sa_column=Column(String(length=120), nullable=False))
    email: str = Field(sa_column=Column(String(length=255), nullable=False, index=True))
    is_active: bool = Field(default=True, nullable=False, index=True)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)


class Timeline(SQLModel, table=True):
    __tablename__ = "timelines"

    id: str = Field(
        default_factory=generate_id,
        sa_column=Column(String(length=64), primary_key=True),
    )
    agent_id: str = Field(foreign_key="agents.id", nullable=False, index=True)
    client_id: str | None = Field(default=None, foreign_key="clients.id", index=True)
    title: str = Field(sa_column=Column(String(length=200), nullable=False))
    share_token: str = Field(
        default_factory=generate_id,
        sa_column=Column(String(length=64), nullable=False, unique=True),
    )
    is_active: bool = Field(default=True, nullable=False)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)


class Property(SQLModel, table=True):
    __tablename__ = "properties"

    id: str = Field(
        default_factory=generate_id,
        sa_column=Column(String(length=64), primary_key=True),
    )
    timeline_id: str | None = Field(default=None, foreign_key="timelines.id", index=True)
    address: str = Field(sa_column=Column(String(length=255), nullable=False))
    price: int = Field(default=0, sa_column=Column(Integer(), nullable=False))
    created_at: datetime = Field(default_factory=utc_now, nullable=False)


class PropertyConversation(SQLModel, table=True):
    """The single message thread attached to a property."""

    __tablename__ = "property_conversations"
    __table_args__ = (
        UniqueConstraint("property_id", name="uq_property_conversations_property"),
        Index("ix_property_conversations_agent_status", "agent_id", "status"),
        Index("ix_property_conversations_client_status", "client_id", "status"),
    )

    id: str = Field(
        default_factory=generate_id,
        sa_column=Column(String(length=64), primary_key=True),
    )
    property_id: str = Field(foreign_key="properties.id", nullable=False)
    timeline_id: str = Field(foreign_key="timelines.id", nullable=False, index=True)
    agent_id: str = Field(foreign_key="agents.id", nullable=False)
    client_id: str = Field(foreign_key="clients.id", nullable=False)
    status: ConversationStatus = Field(
        default=ConversationStatus.ACTIVE,
        sa_column=Column(String(length=32), nullable=False, index=True),
    )
    last_message_at: datetime | None = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)


class ConversationMessage(SQLModel, table=True):
    """A message in a property conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_conversation_unread", "conversation_id", "sender_type", "is_read"),
    )

    id: str = Field(
        default_factory=generate_id,
        sa_column=Column(String(length=64), primary_key=True),
    )
    conversation_id: str = Field(foreign_key="property_conversations.id", nullable=False)
    sender_id: str = Field(sa_column=Column(String(length=64), nullable=False, index=True))
    sender_type: UserType = Field(sa_column=Column(String(length=16), nullable=False))
    content: str = Field(sa_column=Column(Text(), nullable=False))
    message_type: MessageType = Field(
        default=MessageType.TEXT,
        sa_column=Column(String(length=16), nullable=False),
    )
    is_read: bool = Field(default=False, nullable=False)
    read_at: datetime | None = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
