from __future__ import annotations

from dataclasses import dataclass

from sqlmodel import Session, select

from propchat.db.enums import AgentStatus
from propchat.db.models import Agent, Client, Property, Timeline


@dataclass(frozen=True, slots=True)
class PropertyContext:
    property: Property
    timeline: Timeline | None
    client: Client | None


class DirectoryRepository:
    """Read-only access to the agent/client/timeline/property records."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_agent(self, agent_id: str) -> Agent | None:
        return self.session.get(Agent, agent_id)

    def get_client(self, client_id: str) -> Client | None:
        return self.session.get(Client, client_id)

    def get_timeline(self, timeline_id: str) -> Timeline | None:
        return self.session.get(Timeline, timeline_id)

    def get_timeline_client(self, timeline_id: str) -> Client | None:
        timeline = self.get_timeline(timeline_id)
        if timeline is None or timeline.client_id is None:
            return None
        return self.get_client(timeline.client_id)

    def get_property_context(self, property_id: str) -> PropertyContext | None:
        prop = self.session.get(Property, property_id)
        if prop is None:
            return None
        timeline = self.get_timeline(prop.timeline_id) if prop.timeline_id else None
        client = None
        if timeline is not None and timeline.client_id is not None:
            client = self.get_client(timeline.client_id)
        return PropertyContext(property=prop, timeline=timeline, client=client)

    def first_active_agent(self) -> Agent | None:
        statement = (
            select(Agent)
            .where(Agent.status == AgentStatus.ACTIVE.value)
            .order_by(Agent.created_at.asc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return self.session.exec(statement).first()
