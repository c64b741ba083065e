from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from propchat.api.conversations import router as conversations_router
from propchat.api.errors import register_exception_handlers
from propchat.api.health import router as health_router
from propchat.api.ws_messaging import router as ws_messaging_router
from propchat.core.auth import JwtCredentialVerifier
from propchat.core.config import ConfigurationError, get_settings
from propchat.core.logging import TraceContextMiddleware, configure_logging, get_logger
from propchat.db.bootstrap import initialize_database
from propchat.db.engine import dispose_engine, get_engine
from propchat.realtime import GatewayConfig, RealtimeGateway, SqlDataStore, run_periodic

logger = get_logger("propchat.main")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    if settings.jwt_secret is None:
        if settings.app_env == "production":
            raise ConfigurationError("JWT_SECRET must be set in production")
        logger.warning("app.jwt_secret_missing", effect="agent connections are refused")

    verifier = JwtCredentialVerifier.from_settings(settings)
    gateway = RealtimeGateway(
        store=SqlDataStore(),
        verifier=verifier,
        config=GatewayConfig.from_settings(settings),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if settings.db_auto_init:
            initialize_database(
                database_url=settings.database_url,
                seed=settings.db_auto_seed,
            )
        get_engine()
        sweep_tasks: list[asyncio.Task[None]] = [
            asyncio.create_task(
                run_periodic(
                    "membership",
                    gateway.sweep_memberships,
                    interval_seconds=settings.membership_sweep_interval_s,
                )
            ),
            asyncio.create_task(
                run_periodic(
                    "ping",
                    gateway.sweep_pings,
                    interval_seconds=settings.ping_sweep_interval_s,
                )
            ),
        ]
        logger.info("app.started", env=settings.app_env)
        try:
            yield
        finally:
            for task in sweep_tasks:
                task.cancel()
            for task in sweep_tasks:
                with suppress(asyncio.CancelledError):
                    await task
            dispose_engine()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.credential_verifier = verifier

    register_exception_handlers(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TraceContextMiddleware)
    app.include_router(health_router)
    app.include_router(conversations_router, prefix="/api/v2")
    app.include_router(ws_messaging_router)
    return app


app = create_app()
