from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pytest import MonkeyPatch
from sqlmodel import Session, SQLModel

from propchat.core.config import get_settings
from propchat.db.engine import create_engine_from_url, dispose_engine
from propchat.db.models import Agent, Client, Property, Timeline
from propchat.main import create_app
from tests.fakes import InMemoryStore, World, seed_world
from tests.shared import JWT_TEST_SECRET, ApiTestContext


def _to_sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.as_posix()}"


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def world(store: InMemoryStore) -> World:
    return seed_world(store)


@pytest.fixture
def sqlite_engine(tmp_path: Path):
    engine = create_engine_from_url(_to_sqlite_url(tmp_path / "repositories.db"))
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def api_context(tmp_path: Path, monkeypatch: MonkeyPatch) -> Iterator[ApiTestContext]:
    """
    Creates a temporary SQLite database and a test client.
    Seeds two agents, one client with a shared timeline, and two properties on it.
    """
    db_url = _to_sqlite_url(tmp_path / "api-integration.db")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("JWT_SECRET", JWT_TEST_SECRET)
    monkeypatch.setenv("READY_DELAY_MS", "10")
    get_settings.cache_clear()
    dispose_engine()

    engine = create_engine_from_url(db_url)
    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        agent = Agent(email="agent@example.com", first_name="Avery", last_name="Stone")
        other_agent = Agent(email="other@example.com", first_name="Blake")
        session.add(agent)
        session.add(other_agent)
        session.flush()
        client_row = Client(
            agent_id=agent.id,
            first_name="Casey",
            last_name="Reed",
            email="casey@example.com",
        )
        session.add(client_row)
        session.flush()
        timeline = Timeline(agent_id=agent.id, client_id=client_row.id, title="Search")
        session.add(timeline)
        session.flush()
        first = Property(timeline_id=timeline.id, address="1 Harbour St", price=100)
        second = Property(timeline_id=timeline.id, address="2 Hill Rd", price=200)
        session.add(first)
        session.add(second)
        session.commit()
        ids = {
            "agent_id": agent.id,
            "other_agent_id": other_agent.id,
            "client_id": client_row.id,
            "timeline_id": timeline.id,
            "property_id": first.id,
            "second_property_id": second.id,
        }

    with TestClient(create_app()) as client:
        yield ApiTestContext(client=client, engine=engine, **ids)

    engine.dispose()
    dispose_engine()
    get_settings.cache_clear()
