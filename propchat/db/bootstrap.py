from __future__ import annotations

from sqlmodel import Session

from propchat.core.config import get_settings
from propchat.core.logging import get_logger
from propchat.db.engine import create_engine_from_url, ensure_database_parent_dir
from propchat.db.migrations import upgrade_to_head
from propchat.db.seed import seed_initial_data

logger = get_logger("propchat.db.bootstrap")


def initialize_database(
    database_url: str | None = None,
    *,
    seed: bool = True,
) -> None:
    target_url = database_url or get_settings().database_url
    ensure_database_parent_dir(target_url)
    upgrade_to_head(target_url)
    logger.info("db.migrations.applied")

    if not seed:
        return

    engine = create_engine_from_url(target_url)
    try:
        with Session(engine) as session:
            seed_initial_data(session)
    finally:
        engine.dispose()
    logger.info("db.seed.applied")
