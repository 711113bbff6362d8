"""
Roadmap Sync
Configuration classes for the Flask app factory, selected by APP_ENV.

Usage:
    app.config.from_object(config[os.getenv("APP_ENV", "development")])

Environment:
    DATABASE_URL / TEST_DATABASE_URL   SQLAlchemy URL (postgres:// accepted)
    SECRET_KEY                         required in production
    ENCRYPTION_KEY                     Fernet key for stored credentials (read by utils.crypto)
    REDIS_URL                          rate-limit storage
    SOURCE_API_URL, TARGET_API_URL     external system base URLs
    GATEWAY_TIMEOUT_SECONDS            per-request timeout of both gateways
    SYNC_DEFAULT_MAX_DEPTH             Feature depth when a request gives none
    SYNC_STALE_AFTER_MINUTES           age after which an in_progress run counts as abandoned
    LOG_LEVEL                          overrides the per-environment default
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _database_url(env_name: str, fallback: str | None) -> str | None:
    """Read a DB URL, rewriting the legacy ``postgres://`` scheme SQLAlchemy 2.0 rejects."""
    url = os.getenv(env_name)
    if not url:
        return fallback
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


class Config:
    """Settings shared by every environment."""

    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    LOG_LEVEL = os.getenv("LOG_LEVEL")

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    SOURCE_API_URL = os.getenv("SOURCE_API_URL", "https://api.productboard.com")
    TARGET_API_URL = os.getenv("TARGET_API_URL", "https://dev.azure.com")
    GATEWAY_TIMEOUT_SECONDS = _env_int("GATEWAY_TIMEOUT_SECONDS", 30)

    SYNC_DEFAULT_MAX_DEPTH = _env_int("SYNC_DEFAULT_MAX_DEPTH", 5)
    SYNC_STALE_AFTER_MINUTES = _env_int("SYNC_STALE_AFTER_MINUTES", 60)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(basedir, "instance", "roadmap_sync_dev.db"),
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Refuses to start without a real database and a stable secret."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        # 30 s per statement
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, value in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Missing required environment variable(s) in production: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
