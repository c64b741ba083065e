from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from propchat.api.schemas import GatewayStats, HealthzResponse, ReadinessChecks, ReadyzResponse
from propchat.core.config import get_settings
from propchat.core.logging import get_logger
from propchat.db.engine import get_engine

router = APIRouter()

logger = get_logger("propchat.api.health")


@router.get("/healthz", response_model=HealthzResponse)
def healthz() -> HealthzResponse:
    settings = get_settings()
    return HealthzResponse(status="ok", service=settings.app_name, env=settings.app_env)


def _check_database() -> str:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness.database_unavailable", error=str(exc))
        return "unavailable"
    return "ok"


@router.get("/readyz", response_model=ReadyzResponse)
def readyz(request: Request, response: Response) -> ReadyzResponse:
    _ = get_settings()
    database = _check_database()
    gateway = getattr(request.app.state, "gateway", None)
    stats = GatewayStats(**gateway.stats()) if gateway is not None else None
    ready = database == "ok" and gateway is not None
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadyzResponse(
        status="ready" if ready else "not_ready",
        checks=ReadinessChecks(
            configuration="ok",
            database=database,
            gateway="ok" if gateway is not None else "stopped",
        ),
        gateway=stats,
    )
