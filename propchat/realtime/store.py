from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from propchat.db.enums import MessageType, UserType
from propchat.db.models import Agent, Client, ConversationMessage, PropertyConversation, utc_now
from propchat.db.repositories import (
    ConversationRepository,
    DirectoryRepository,
    MessageRepository,
    PropertyContext,
)
from propchat.db.session import session_scope

T = TypeVar("T")


class StoreUnavailableError(Exception):
    """The durable store could not be reached."""


@dataclass(frozen=True, slots=True)
class PropertyUnread:
    agent_unread: int
    client_unread: int


@dataclass(frozen=True, slots=True)
class AgentUnreadEntry:
    conversation_id: str
    property_id: str
    address: str
    client_id: str
    client_name: str
    unread_count: int


class DataStore(Protocol):
    """Durable records the gateway reads and writes. Every call is a suspension point."""

    async def get_timeline_client(self, timeline_id: str) -> Client | None: ...

    async def get_property_context(self, property_id: str) -> PropertyContext | None: ...

    async def first_active_agent(self) -> Agent | None: ...

    async def find_conversation_by_property(
        self, property_id: str
    ) -> PropertyConversation | None: ...

    async def get_conversation(self, conversation_id: str) -> PropertyConversation | None: ...

    async def create_conversation_if_absent(
        self,
        *,
        property_id: str,
        timeline_id: str,
        agent_id: str,
        client_id: str,
    ) -> PropertyConversation: ...

    async def append_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        sender_type: UserType,
        content: str,
        message_type: MessageType,
    ) -> ConversationMessage: ...

    async def list_recent_messages(
        self, conversation_id: str, *, limit: int
    ) -> list[ConversationMessage]: ...

    async def get_message(self, message_id: str) -> ConversationMessage | None: ...

    async def mark_all_read(self, conversation_id: str, *, reader: UserType) -> int: ...

    async def mark_message_read(self, message_id: str, *, reader: UserType) -> bool: ...

    async def property_unread(self, conversation_id: str) -> PropertyUnread: ...

    async def agent_unread_entries(self, agent_id: str) -> list[AgentUnreadEntry]: ...

    async def client_unread_by_property(self, client_id: str) -> dict[str, int]: ...


def client_display_name(client: Client) -> str:
    return " ".join(part for part in (client.first_name, client.last_name) if part).strip()


class SqlDataStore:
    """DataStore over the SQLModel repositories, one short session per call."""

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    async def _run(self, operation: Callable[[Session], T]) -> T:
        def _call() -> T:
            with session_scope(self._engine) as session:
                return operation(session)

        try:
            return await run_in_threadpool(_call)
        except OperationalError as exc:
            raise StoreUnavailableError(str(exc.orig) if exc.orig is not None else str(exc)) from exc

    async def get_timeline_client(self, timeline_id: str) -> Client | None:
        return await self._run(lambda s: DirectoryRepository(s).get_timeline_client(timeline_id))

    async def get_property_context(self, property_id: str) -> PropertyContext | None:
        return await self._run(lambda s: DirectoryRepository(s).get_property_context(property_id))

    async def first_active_agent(self) -> Agent | None:
        return await self._run(lambda s: DirectoryRepository(s).first_active_agent())

    async def find_conversation_by_property(self, property_id: str) -> PropertyConversation | None:
        return await self._run(lambda s: ConversationRepository(s).find_by_property(property_id))

    async def get_conversation(self, conversation_id: str) -> PropertyConversation | None:
        return await self._run(lambda s: ConversationRepository(s).get(conversation_id))

    async def create_conversation_if_absent(
        self,
        *,
        property_id: str,
        timeline_id: str,
        agent_id: str,
        client_id: str,
    ) -> PropertyConversation:
        def _create(session: Session) -> PropertyConversation:
            conversation, _ = ConversationRepository(session).create_if_absent(
                property_id=property_id,
                timeline_id=timeline_id,
                agent_id=agent_id,
                client_id=client_id,
            )
            return conversation

        return await self._run(_create)

    async def append_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        sender_type: UserType,
        content: str,
        message_type: MessageType,
    ) -> ConversationMessage:
        def _append(session: Session) -> ConversationMessage:
            message = MessageRepository(session).create(
                ConversationMessage(
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    sender_type=sender_type,
                    content=content,
                    message_type=message_type,
                    created_at=utc_now(),
                )
            )
            ConversationRepository(session).touch_last_message(
                conversation_id, at=message.created_at
            )
            return message

        return await self._run(_append)

    async def list_recent_messages(
        self, conversation_id: str, *, limit: int
    ) -> list[ConversationMessage]:
        return await self._run(
            lambda s: MessageRepository(s).list_recent(conversation_id, limit=limit)
        )

    async def mark_all_read(self, conversation_id: str, *, reader: UserType) -> int:
        return await self._run(
            lambda s: MessageRepository(s).mark_all_read(conversation_id, reader=reader)
        )

    async def get_message(self, message_id: str) -> ConversationMessage | None:
        return await self._run(lambda s: MessageRepository(s).get(message_id))

    async def mark_message_read(self, message_id: str, *, reader: UserType) -> bool:
        return await self._run(lambda s: MessageRepository(s).mark_read(message_id, reader=reader))

    async def property_unread(self, conversation_id: str) -> PropertyUnread:
        def _counts(session: Session) -> PropertyUnread:
            messages = MessageRepository(session)
            return PropertyUnread(
                agent_unread=messages.count_unread(conversation_id, reader=UserType.AGENT),
                client_unread=messages.count_unread(conversation_id, reader=UserType.CLIENT),
            )

        return await self._run(_counts)

    async def agent_unread_entries(self, agent_id: str) -> list[AgentUnreadEntry]:
        def _entries(session: Session) -> list[AgentUnreadEntry]:
            rows = ConversationRepository(session).list_active_for_agent(agent_id)
            counts = MessageRepository(session).count_unread_by_conversation(
                [row.conversation.id for row in rows],
                reader=UserType.AGENT,
            )
            return [
                AgentUnreadEntry(
                    conversation_id=row.conversation.id,
                    property_id=row.property.id,
                    address=row.property.address,
                    client_id=row.client.id,
                    client_name=client_display_name(row.client),
                    unread_count=counts.get(row.conversation.id, 0),
                )
                for row in rows
            ]

        return await self._run(_entries)

    async def client_unread_by_property(self, client_id: str) -> dict[str, int]:
        def _counts(session: Session) -> dict[str, int]:
            conversations = ConversationRepository(session).list_active_for_client(client_id)
            counts = MessageRepository(session).count_unread_by_conversation(
                [conversation.id for conversation in conversations],
                reader=UserType.CLIENT,
            )
            return {
                conversation.property_id: counts.get(conversation.id, 0)
                for conversation in conversations
            }

        return await self._run(_counts)
