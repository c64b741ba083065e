"""
Development runner for the messaging gateway.

Reads HOST/PORT/DEBUG from the same settings the app uses; reload is enabled in debug.

Usage: python run_server.py
"""

from __future__ import annotations

import uvicorn

from propchat.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "propchat.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["propchat"] if settings.debug else None,
        ws="auto",
    )


if __name__ == "__main__":
    main()
