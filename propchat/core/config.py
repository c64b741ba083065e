from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ConfigurationError(Exception):
    """Raised when the service cannot build a usable configuration."""


def _load_env_file() -> None:
    """Load a local .env file if one exists; real environment variables win."""
    candidate = os.getenv("PROPCHAT_ENV_FILE")
    if candidate:
        env_file = Path(candidate)
        if not env_file.is_file():
            raise ConfigurationError(f"PROPCHAT_ENV_FILE does not exist: {candidate}")
        load_dotenv(env_file, override=False)
        return
    default = Path.cwd() / ".env"
    if default.is_file():
        load_dotenv(default, override=False)


_load_env_file()

Environment = Literal["development", "test", "production"]
LogFormat = Literal["json", "console"]

_DEFAULT_CORS_ORIGINS: tuple[str, ...] = (
    "http://localhost:3000",
    "http://127.0.0.1:3000",
)


class Settings(BaseModel):
    app_name: str = Field(default="Propchat Realtime")
    app_env: Environment = Field(default="development")
    debug: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)
    database_url: str = Field(default="sqlite:///./propchat.db")
    testing: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="json")
    log_file: str | None = Field(default=None)
    sqlalchemy_echo: bool | None = Field(default=None)  # None = auto (debug mode)
    db_auto_init: bool = Field(default=True)
    db_auto_seed: bool = Field(default=True)
    cors_allow_origins: list[str] = Field(default_factory=lambda: list(_DEFAULT_CORS_ORIGINS))
    cors_allow_credentials: bool = Field(default=True)
    jwt_secret: str | None = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")
    jwt_audience: str | None = Field(default=None)
    jwt_issuer: str | None = Field(default=None)
    jwt_leeway_s: int = Field(default=30, ge=0)
    ready_delay_ms: int = Field(default=50, ge=0)
    membership_ttl_s: int = Field(default=300, ge=1)
    membership_sweep_interval_s: int = Field(default=60, ge=1)
    ping_ttl_s: int = Field(default=300, ge=1)
    ping_sweep_interval_s: int = Field(default=300, ge=1)
    history_limit: int = Field(default=50, ge=1, le=500)
    allow_anonymous_messaging: bool = Field(default=True)
    allow_fallback_agent: bool = Field(default=True)


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _to_bool_or_none(value: str | None) -> bool | None:
    """Parse boolean from env var, return None if not set (for auto behavior)."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _to_int(value: str | None, *, default: int, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _to_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _normalize_env(value: str | None) -> Environment:
    if value is None:
        return "development"
    lowered = value.strip().lower()
    if lowered == "development":
        return "development"
    if lowered == "test":
        return "test"
    if lowered == "production":
        return "production"
    return "development"


def _normalize_log_format(value: str | None, app_env: Environment) -> LogFormat:
    if value is not None:
        lowered = value.strip().lower()
        if lowered == "console":
            return "console"
        if lowered == "json":
            return "json"
    return "console" if app_env == "development" else "json"


def _parse_csv_list(value: str | None, *, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    items = [part.strip() for part in value.split(",")]
    normalized = [item for item in items if item]
    return normalized or list(default)


def load_settings() -> Settings:
    app_env = _normalize_env(os.getenv("APP_ENV"))
    default_debug = app_env != "production"
    default_testing = app_env == "test"
    default_db_auto_init = app_env == "development"
    default_db_auto_seed = app_env == "development"

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        database_url = (
            "sqlite:///./propchat_test.db" if app_env == "test" else "sqlite:///./propchat.db"
        )

    return Settings(
        app_name=os.getenv("APP_NAME", "Propchat Realtime"),
        app_env=app_env,
        debug=_to_bool(os.getenv("DEBUG"), default=default_debug),
        host=os.getenv("HOST", "127.0.0.1"),
        port=_to_int(os.getenv("PORT"), default=8000, minimum=1),
        database_url=database_url,
        testing=_to_bool(os.getenv("TESTING"), default=default_testing),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=_normalize_log_format(os.getenv("LOG_FORMAT"), app_env),
        log_file=_to_optional_text(os.getenv("LOG_FILE")),
        sqlalchemy_echo=_to_bool_or_none(os.getenv("SQLALCHEMY_ECHO")),
        db_auto_init=_to_bool(os.getenv("DB_AUTO_INIT"), default=default_db_auto_init),
        db_auto_seed=_to_bool(os.getenv("DB_AUTO_SEED"), default=default_db_auto_seed),
        cors_allow_origins=_parse_csv_list(
            os.getenv("CORS_ALLOW_ORIGINS"),
            default=list(_DEFAULT_CORS_ORIGINS),
        ),
        cors_allow_credentials=_to_bool(
            os.getenv("CORS_ALLOW_CREDENTIALS"),
            default=True,
        ),
        jwt_secret=_to_optional_text(os.getenv("JWT_SECRET")),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip() or "HS256",
        jwt_audience=_to_optional_text(os.getenv("JWT_AUDIENCE")),
        jwt_issuer=_to_optional_text(os.getenv("JWT_ISSUER")),
        jwt_leeway_s=_to_int(os.getenv("JWT_LEEWAY_S"), default=30),
        ready_delay_ms=_to_int(os.getenv("READY_DELAY_MS"), default=50),
        membership_ttl_s=_to_int(os.getenv("MEMBERSHIP_TTL_S"), default=300, minimum=1),
        membership_sweep_interval_s=_to_int(
            os.getenv("MEMBERSHIP_SWEEP_INTERVAL_S"), default=60, minimum=1
        ),
        ping_ttl_s=_to_int(os.getenv("PING_TTL_S"), default=300, minimum=1),
        ping_sweep_interval_s=_to_int(os.getenv("PING_SWEEP_INTERVAL_S"), default=300, minimum=1),
        history_limit=min(_to_int(os.getenv("HISTORY_LIMIT"), default=50, minimum=1), 500),
        allow_anonymous_messaging=_to_bool(
            os.getenv("ALLOW_ANONYMOUS_MESSAGING"),
            default=True,
        ),
        allow_fallback_agent=_to_bool(os.getenv("ALLOW_FALLBACK_AGENT"), default=True),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
