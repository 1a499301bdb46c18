"""
ISNAD Workflow Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import json
import os
import secrets

from isnad.services.sla_clock import DEFAULT_SLA_DAYS as _DEFAULT_SLA_DAYS

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'isnad_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _sla_days_from_env() -> dict:
    """ISNAD_SLA_DAYS may override individual stages as a JSON object."""
    raw = os.getenv("ISNAD_SLA_DAYS")
    days = dict(_DEFAULT_SLA_DAYS)
    if raw:
        days.update({k: int(v) for k, v in json.loads(raw).items()})
    return days


def _thresholds_from_env() -> tuple:
    raw = os.getenv("ISNAD_SLA_THRESHOLDS", "0.5,0.8,1.0")
    return tuple(float(p) for p in raw.split(","))


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Rate limiter storage (Redis in production, memory for dev)
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ISNAD engine
    ISNAD_SLA_DAYS = _sla_days_from_env()
    ISNAD_SLA_DEFAULT_DAYS = int(os.getenv("ISNAD_SLA_DEFAULT_DAYS", "5"))
    ISNAD_SLA_THRESHOLDS = _thresholds_from_env()
    ISNAD_RETURN_POLICY = os.getenv("ISNAD_RETURN_POLICY", "reset_all")  # reset_all | reopen_current
    ISNAD_REJECTION_JUSTIFICATION_MIN = int(os.getenv("ISNAD_REJECTION_JUSTIFICATION_MIN", "50"))
    ISNAD_PAGE_SIZE = int(os.getenv("ISNAD_PAGE_SIZE", "25"))
    ISNAD_MAX_PAGE_SIZE = int(os.getenv("ISNAD_MAX_PAGE_SIZE", "100"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    ISNAD_RETURN_POLICY = "reset_all"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
