from pathlib import Path

import pytest
from pytest import MonkeyPatch

from propchat.core.config import load_settings
from propchat.realtime.gateway import GatewayConfig


def _to_sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.as_posix()}"


@pytest.fixture(autouse=True)
def _reset_required_env(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    for name in (
        "APP_ENV",
        "DEBUG",
        "TESTING",
        "DB_AUTO_INIT",
        "DB_AUTO_SEED",
        "JWT_SECRET",
        "READY_DELAY_MS",
        "HISTORY_LIMIT",
        "LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", _to_sqlite_url(tmp_path / "config-test.db"))


def test_load_settings_for_test_env(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("APP_ENV", "test")
    db_url = _to_sqlite_url(tmp_path / "test-env.db")
    monkeypatch.setenv("DATABASE_URL", db_url)

    settings = load_settings()

    assert settings.app_env == "test"
    assert settings.testing is True
    assert settings.debug is True
    assert settings.database_url == db_url
    assert settings.db_auto_init is False
    assert settings.db_auto_seed is False


def test_load_settings_for_production_env(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "production")

    settings = load_settings()

    assert settings.app_env == "production"
    assert settings.debug is False
    assert settings.db_auto_init is False
    assert settings.log_format == "json"


def test_load_settings_defaults_database_per_environment(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("APP_ENV", "test")
    assert load_settings().database_url == "sqlite:///./propchat_test.db"

    monkeypatch.setenv("APP_ENV", "development")
    assert load_settings().database_url == "sqlite:///./propchat.db"


def test_load_settings_for_development_env_db_auto_init_defaults(
    monkeypatch: MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "development")

    settings = load_settings()

    assert settings.db_auto_init is True
    assert settings.db_auto_seed is True
    assert settings.log_format == "console"


def test_load_settings_supports_db_auto_init_overrides(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("DB_AUTO_INIT", "false")
    monkeypatch.setenv("DB_AUTO_SEED", "no")

    settings = load_settings()

    assert settings.db_auto_init is False
    assert settings.db_auto_seed is False


def test_load_settings_normalizes_log_format(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_FORMAT", "CONSOLE")
    assert load_settings().log_format == "console"

    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("LOG_FORMAT", "unsupported")
    assert load_settings().log_format == "json"


def test_load_settings_reads_realtime_tuning(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv("READY_DELAY_MS", "0")
    monkeypatch.setenv("MEMBERSHIP_TTL_S", "120")
    monkeypatch.setenv("PING_TTL_S", "90")
    monkeypatch.setenv("HISTORY_LIMIT", "5000")
    monkeypatch.setenv("ALLOW_ANONYMOUS_MESSAGING", "false")
    monkeypatch.setenv("ALLOW_FALLBACK_AGENT", "0")

    config = GatewayConfig.from_settings(load_settings())

    assert config.ready_delay_ms == 0
    assert config.membership_ttl_s == 120
    assert config.ping_ttl_s == 90
    assert config.history_limit == 500
    assert config.allow_anonymous_messaging is False
    assert config.allow_fallback_agent is False


def test_load_settings_ignores_invalid_numbers(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv("READY_DELAY_MS", "soon")
    monkeypatch.setenv("MEMBERSHIP_TTL_S", "0")

    settings = load_settings()

    assert settings.ready_delay_ms == 50
    assert settings.membership_ttl_s == 300


def test_load_settings_reads_jwt_options(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv("JWT_SECRET", "  shared-secret  ")
    monkeypatch.setenv("JWT_AUDIENCE", "propchat")
    monkeypatch.setenv("JWT_ALGORITHM", "")

    settings = load_settings()

    assert settings.jwt_secret == "shared-secret"
    assert settings.jwt_audience == "propchat"
    assert settings.jwt_algorithm == "HS256"


def test_load_settings_parses_cors_origins(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example.com, ,https://admin.example.com")

    settings = load_settings()

    assert settings.cors_allow_origins == [
        "https://app.example.com",
        "https://admin.example.com",
    ]
