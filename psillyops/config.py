"""
PsillyOps Production
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'psillyops_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _db_url(name: str) -> str:
    # Heroku-style URLs use postgres:// but SQLAlchemy 2.0 requires postgresql://
    raw = os.getenv(name, "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else ""


def _csv(value: str) -> frozenset:
    return frozenset(v.strip().upper() for v in value.split(",") if v.strip())


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    LOG_LEVEL = os.getenv("LOG_LEVEL")

    # Production runs
    PRODUCTION_STALL_HOURS = float(os.getenv("PRODUCTION_STALL_HOURS", "4"))
    PRODUCTION_ACTIVITY_WINDOW_DAYS = int(os.getenv("PRODUCTION_ACTIVITY_WINDOW_DAYS", "7"))
    RUN_EDIT_PROPOSAL_TTL_MINUTES = int(os.getenv("RUN_EDIT_PROPOSAL_TTL_MINUTES", "15"))
    TRACKING_BASE_URL = os.getenv("TRACKING_BASE_URL", "http://localhost:5000")
    ADMIN_ROLES = _csv(os.getenv("ADMIN_ROLES", "ADMIN"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _db_url("DATABASE_URL") or _SQLITE_DEV


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    TRACKING_BASE_URL = "https://ops.test"
    PRODUCTION_STALL_HOURS = 4
    PRODUCTION_ACTIVITY_WINDOW_DAYS = 7
    RUN_EDIT_PROPOSAL_TTL_MINUTES = 15
    ADMIN_ROLES = frozenset({"ADMIN"})


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _db_url("DATABASE_URL") or None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
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
