"""
PTW Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'ptw_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _database_url(default=None):
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


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

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Logging (LOG_LEVEL is read straight from the environment)
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    # Auth
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false")
    API_KEYS = os.getenv("API_KEYS", "")

    # Permit workflow defaults (a stored company policy overrides them)
    PTW_DEFAULT_EXPIRY_HOURS = float(os.getenv("PTW_DEFAULT_EXPIRY_HOURS", "8"))
    PTW_REMINDER_LEAD_HOURS = float(os.getenv("PTW_REMINDER_LEAD_HOURS", "24"))

    # Post-commit side effects (notifications, timer scheduling)
    SIDE_EFFECT_RETRY_MAX = int(os.getenv("SIDE_EFFECT_RETRY_MAX", "2"))
    SIDE_EFFECT_RETRY_BACKOFF = os.getenv("SIDE_EFFECT_RETRY_BACKOFF", "1,4")

    # Rate limiting (Flask-Limiter); per-blueprint limits, see middleware/rate_limiter.py
    RATELIMIT_ENABLED = os.getenv("RATELIMIT_ENABLED", "true").lower() not in ("false", "0", "no", "off")
    RATELIMIT_PERMITS = os.getenv("RATELIMIT_PERMITS", "60/minute")
    RATELIMIT_POLICIES = os.getenv("RATELIMIT_POLICIES", "30/minute")
    RATELIMIT_NOTIFICATIONS = os.getenv("RATELIMIT_NOTIFICATIONS", "200/minute")

    # Timer poller
    TIMER_MAX_ATTEMPTS = int(os.getenv("TIMER_MAX_ATTEMPTS", "5"))
    TIMER_BATCH_SIZE = int(os.getenv("TIMER_BATCH_SIZE", "100"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # Auth disabled in test environment
    API_AUTH_ENABLED = "false"
    RATELIMIT_ENABLED = False
    # No sleeping between side-effect retries
    SIDE_EFFECT_RETRY_BACKOFF = "0"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "true")

    # Override engine options with PostgreSQL statement timeout
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
