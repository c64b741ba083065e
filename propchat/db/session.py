from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlmodel import Session

from propchat.db.engine import get_engine


def get_session() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session


@contextmanager
def session_scope(engine: Engine | None = None) -> Iterator[Session]:
    """Short-lived session; `expire_on_commit=False` keeps returned rows readable after close."""
    with Session(engine or get_engine(), expire_on_commit=False) as session:
        yield session
