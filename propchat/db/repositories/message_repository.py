from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, cast

from sqlalchemy import func, update
from sqlmodel import Session, select

from propchat.db.enums import UserType, counterpart
from propchat.db.models import ConversationMessage, utc_now
from propchat.db.repositories.common import Page, Pagination, paginate


@dataclass(frozen=True, slots=True)
class MessageFilters:
    conversation_id: str | None = None
    sender_type: UserType | None = None
    unread_only: bool = False


class MessageRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, message: ConversationMessage) -> ConversationMessage:
        self.session.add(message)
        self.session.commit()
        self.session.refresh(message)
        return message

    def get(self, message_id: str) -> ConversationMessage | None:
        return self.session.get(ConversationMessage, message_id)

    def list_recent(self, conversation_id: str, *, limit: int = 50) -> list[ConversationMessage]:
        """The newest `limit` messages, returned oldest first."""
        created_at = cast(Any, ConversationMessage.created_at)
        statement = (
            select(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation_id)
            .order_by(created_at.desc())
            .limit(limit)
        )
        rows = list(self.session.exec(statement).all())
        rows.reverse()
        return rows

    def list_messages(
        self,
        *,
        pagination: Pagination | None = None,
        filters: MessageFilters | None = None,
    ) -> Page[ConversationMessage]:
        active_filters = filters or MessageFilters()
        active_pagination = pagination or Pagination()

        statement = select(ConversationMessage)
        if active_filters.conversation_id is not None:
            statement = statement.where(
                ConversationMessage.conversation_id == active_filters.conversation_id
            )
        if active_filters.sender_type is not None:
            statement = statement.where(
                ConversationMessage.sender_type == active_filters.sender_type.value
            )
        if active_filters.unread_only:
            statement = statement.where(ConversationMessage.is_read == False)  # noqa: E712

        statement = statement.order_by(ConversationMessage.created_at.asc())  # type: ignore[attr-defined]
        return paginate(self.session, statement, pagination=active_pagination)

    def mark_all_read(self, conversation_id: str, *, reader: UserType) -> int:
        """Mark every unread message sent by the reader's counterpart as read."""
        statement = (
            update(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation_id)  # type: ignore[arg-type]
            .where(ConversationMessage.sender_type == counterpart(reader).value)  # type: ignore[arg-type]
            .where(ConversationMessage.is_read == False)  # type: ignore[arg-type]  # noqa: E712
            .values(is_read=True, read_at=utc_now())
        )
        result = self.session.exec(statement)  # type: ignore[call-overload]
        self.session.commit()
        return int(result.rowcount or 0)

    def mark_read(self, message_id: str, *, reader: UserType) -> bool:
        """Mark one message read; a reader's own messages are left untouched."""
        message = self.get(message_id)
        if message is None or message.is_read or message.sender_type != counterpart(reader):
            return False
        message.is_read = True
        message.read_at = utc_now()
        self.session.add(message)
        self.session.commit()
        return True

    def count_unread(self, conversation_id: str, *, reader: UserType) -> int:
        counts = self.count_unread_by_conversation([conversation_id], reader=reader)
        return counts.get(conversation_id, 0)

    def count_unread_by_conversation(
        self,
        conversation_ids: Sequence[str],
        *,
        reader: UserType,
    ) -> dict[str, int]:
        if not conversation_ids:
            return {}
        conversation_id = cast(Any, ConversationMessage.conversation_id)
        statement = (
            select(conversation_id, func.count())
            .where(conversation_id.in_(list(conversation_ids)))
            .where(ConversationMessage.sender_type == counterpart(reader).value)
            .where(ConversationMessage.is_read == False)  # noqa: E712
            .group_by(conversation_id)
        )
        rows = self.session.exec(statement).all()
        return {str(row[0]): int(row[1]) for row in rows}
