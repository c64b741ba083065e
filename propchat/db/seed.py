from __future__ import annotations

from sqlmodel import Session, select

from propchat.db.enums import AgentStatus
from propchat.db.models import Agent, Client, Property, Timeline

DEMO_AGENT_EMAIL = "agent@propchat.local"
DEMO_CLIENT_EMAIL = "client@propchat.local"
DEMO_TIMELINE_TITLE = "Spring house hunt"

DEMO_PROPERTIES: tuple[dict[str, str | int], ...] = (
    {"address": "12 Harbour View Rd", "price": 845000},
    {"address": "4/88 Elm Street", "price": 515000},
)


def seed_initial_data(session: Session) -> None:
    """Create one agent, one client, a shared timeline and a couple of properties.

    Idempotent: existing rows (matched by email / timeline title / address) are reused.
    """
    agent = session.exec(select(Agent).where(Agent.email == DEMO_AGENT_EMAIL)).first()
    if agent is None:
        agent = Agent(
            email=DEMO_AGENT_EMAIL,
            first_name="Avery",
            last_name="Agent",
            status=AgentStatus.ACTIVE,
        )
        session.add(agent)
        session.flush()

    client = session.exec(
        select(Client)
        .where(Client.email == DEMO_CLIENT_EMAIL)
        .where(Client.agent_id == agent.id)
    ).first()
    if client is None:
        client = Client(
            agent_id=agent.id,
            first_name="Casey",
            last_name="Client",
            email=DEMO_CLIENT_EMAIL,
        )
        session.add(client)
        session.flush()

    timeline = session.exec(
        select(Timeline)
        .where(Timeline.agent_id == agent.id)
        .where(Timeline.title == DEMO_TIMELINE_TITLE)
    ).first()
    if timeline is None:
        timeline = Timeline(agent_id=agent.id, client_id=client.id, title=DEMO_TIMELINE_TITLE)
        session.add(timeline)
        session.flush()

    for definition in DEMO_PROPERTIES:
        address = str(definition["address"])
        existing = session.exec(
            select(Property)
            .where(Property.timeline_id == timeline.id)
            .where(Property.address == address)
        ).first()
        if existing is not None:
            continue
        session.add(
            Property(
                timeline_id=timeline.id,
                address=address,
                price=int(definition["price"]),
            )
        )

    session.commit()
