"""
CRA Request Tracker
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name]())
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when no DATABASE_URL is set
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'cra_tracker_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _database_url():
    # Heroku-style postgres:// URLs are rejected by SQLAlchemy 2.0
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else ""


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")      # json | readable; default by environment
    SERVICE_NAME = "cra-tracker"

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Redis (rate-limit storage); memory:// when unset
    REDIS_URL = os.getenv("REDIS_URL", "")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limits
    CRA_STATUS_RATE_LIMIT = os.getenv("CRA_STATUS_RATE_LIMIT", "60/minute")

    # Notifications (outbox only; delivery runs elsewhere)
    CRA_APP_BASE_URL = os.getenv("CRA_APP_BASE_URL", "")
    CRA_NOTIFY_ENABLED = _env_bool("CRA_NOTIFY_ENABLED")
    CRA_NOTIFY_TEST_MODE = _env_bool("CRA_NOTIFY_TEST_MODE")
    CRA_NOTIFY_TEST_EMAIL = os.getenv("CRA_NOTIFY_TEST_EMAIL", "")
    CRA_NOTIFY_SENDER = os.getenv("CRA_NOTIFY_SENDER", "")
    CRA_RECIPIENTS_SALES = os.getenv("CRA_RECIPIENTS_SALES", "")
    CRA_RECIPIENTS_DESIGN = os.getenv("CRA_RECIPIENTS_DESIGN", "")
    CRA_RECIPIENTS_COSTING = os.getenv("CRA_RECIPIENTS_COSTING", "")
    CRA_RECIPIENTS_ADMIN = os.getenv("CRA_RECIPIENTS_ADMIN", "")
    CRA_NOTIFY_FLOW_MAP = os.getenv("CRA_NOTIFY_FLOW_MAP", "")
    CRA_NOTIFY_SUBJECTS = {}

    # Requests slower than this are logged at WARNING
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or _SQLITE_DEV


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False

    # Deterministic notification setup for the suite
    CRA_NOTIFY_ENABLED = True
    CRA_NOTIFY_TEST_MODE = False
    CRA_APP_BASE_URL = "https://cra.example.com"
    CRA_RECIPIENTS_SALES = "sales@example.com"
    CRA_RECIPIENTS_DESIGN = "design@example.com"
    CRA_RECIPIENTS_COSTING = "costing@example.com"
    CRA_RECIPIENTS_ADMIN = "admin@example.com"
    CRA_NOTIFY_FLOW_MAP = ""


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url() or None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
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
