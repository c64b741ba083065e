from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from propchat.db.enums import ConversationStatus
from propchat.db.models import Client, Property, PropertyConversation, utc_now


@dataclass(frozen=True, slots=True)
class AgentConversationRow:
    conversation: PropertyConversation
    client: Client
    property: Property


class ConversationRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, conversation_id: str) -> PropertyConversation | None:
        return self.session.get(PropertyConversation, conversation_id)

    def find_by_property(self, property_id: str) -> PropertyConversation | None:
        statement = select(PropertyConversation).where(
            PropertyConversation.property_id == property_id
        )
        return self.session.exec(statement).first()

    def create_if_absent(
        self,
        *,
        property_id: str,
        timeline_id: str,
        agent_id: str,
        client_id: str,
    ) -> tuple[PropertyConversation, bool]:
        """Insert the property's conversation unless one exists; returns (row, created).

        Concurrent creators race on the unique property_id constraint; the loser
        rolls back and reads the winner's row.
        """
        existing = self.find_by_property(property_id)
        if existing is not None:
            return existing, False

        conversation = PropertyConversation(
            property_id=property_id,
            timeline_id=timeline_id,
            agent_id=agent_id,
            client_id=client_id,
            status=ConversationStatus.ACTIVE,
        )
        self.session.add(conversation)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            winner = self.find_by_property(property_id)
            if winner is None:
                raise
            return winner, False
        self.session.refresh(conversation)
        return conversation, True

    def touch_last_message(self, conversation_id: str, *, at: datetime | None = None) -> None:
        moment = at or utc_now()
        statement = (
            update(PropertyConversation)
            .where(PropertyConversation.id == conversation_id)  # type: ignore[arg-type]
            .values(last_message_at=moment, updated_at=moment)
        )
        self.session.exec(statement)  # type: ignore[call-overload]
        self.session.commit()

    def list_active_for_agent(self, agent_id: str) -> list[AgentConversationRow]:
        """Active conversations of an agent whose client is still active."""
        statement = (
            select(PropertyConversation, Client, Property)
            .join(Client, Client.id == PropertyConversation.client_id)  # type: ignore[arg-type]
            .join(Property, Property.id == PropertyConversation.property_id)  # type: ignore[arg-type]
            .where(PropertyConversation.agent_id == agent_id)
            .where(PropertyConversation.status == ConversationStatus.ACTIVE.value)
            .where(Client.is_active == True)  # noqa: E712
            .order_by(PropertyConversation.created_at.asc())  # type: ignore[attr-defined]
        )
        return [
            AgentConversationRow(conversation=conversation, client=client, property=prop)
            for conversation, client, prop in self.session.exec(statement).all()
        ]

    def list_active_for_client(self, client_id: str) -> list[PropertyConversation]:
        statement = (
            select(PropertyConversation)
            .where(PropertyConversation.client_id == client_id)
            .where(PropertyConversation.status == ConversationStatus.ACTIVE.value)
            .order_by(PropertyConversation.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(self.session.exec(statement).all())
