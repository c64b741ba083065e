from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pytest import MonkeyPatch
from sqlalchemy import inspect
from sqlmodel import Session, select

from propchat.core.config import get_settings
from propchat.db.engine import create_engine_from_url, dispose_engine
from propchat.db.models import Agent, Property
from propchat.main import create_app
from tests.shared import ApiTestContext


def _to_sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.as_posix()}"


@pytest.fixture
def health_client(tmp_path: Path, monkeypatch: MonkeyPatch) -> Iterator[TestClient]:
    db_url = _to_sqlite_url(tmp_path / "health.db")
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.delenv("DB_AUTO_INIT", raising=False)
    monkeypatch.delenv("DB_AUTO_SEED", raising=False)
    get_settings.cache_clear()
    dispose_engine()

    with TestClient(create_app()) as client:
        yield client

    dispose_engine()
    get_settings.cache_clear()


def test_healthz(health_client: TestClient) -> None:
    response = health_client.get("/healthz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["service"] == "Propchat Realtime"
    assert payload["env"] == "development"


def test_readyz_reports_database_and_gateway(health_client: TestClient) -> None:
    response = health_client.get("/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["checks"] == {"configuration": "ok", "database": "ok", "gateway": "ok"}
    assert payload["gateway"] == {
        "connections": 0,
        "ready_connections": 0,
        "groups": 0,
        "memberships": 0,
        "tracked_pings": 0,
    }


def test_readyz_counts_live_sockets(api_context: ApiTestContext) -> None:
    url = f"/ws/messaging?userType=CLIENT&timelineId={api_context.timeline_id}"
    with api_context.client.websocket_connect(url) as websocket:
        assert websocket.receive_json()["type"] == "connected"
        websocket.send_json(
            {
                "type": "join-property-conversation",
                "payload": {"propertyId": api_context.property_id},
            }
        )
        assert websocket.receive_json()["type"] == "property-conversation-joined"
        websocket.send_json({"type": "ping", "payload": {}})
        assert websocket.receive_json()["type"] == "pong"

        payload = api_context.client.get("/readyz").json()

    assert payload["gateway"]["connections"] == 1
    assert payload["gateway"]["ready_connections"] == 1
    assert payload["gateway"]["tracked_pings"] == 1


def test_startup_auto_initializes_database_in_development(
    tmp_path: Path,
    monkeypatch: MonkeyPatch,
) -> None:
    db_url = _to_sqlite_url(tmp_path / "auto-init.db")
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.delenv("DB_AUTO_INIT", raising=False)
    monkeypatch.delenv("DB_AUTO_SEED", raising=False)
    get_settings.cache_clear()
    dispose_engine()

    with TestClient(create_app()) as client:
        response = client.get("/readyz")
        assert response.status_code == 200

    engine = create_engine_from_url(db_url)
    try:
        table_names = set(inspect(engine).get_table_names())
        assert {"property_conversations", "messages", "alembic_version"}.issubset(table_names)
        with Session(engine) as session:
            assert len(session.exec(select(Agent)).all()) == 1
            assert len(session.exec(select(Property)).all()) == 2
    finally:
        engine.dispose()
        dispose_engine()
        get_settings.cache_clear()
