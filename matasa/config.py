"""
Matasa incident pipeline
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'matasa_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    ENV_NAME = "default"
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Redis (USSD rate limiter, Flask-Limiter storage)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── USSD ─────────────────────────────────────────────────────────────
    USSD_SERVICE_CODE = os.getenv("USSD_SERVICE_CODE", "*384*154011#")
    USSD_SESSION_TIMEOUT_SECONDS = int(os.getenv("USSD_SESSION_TIMEOUT_SECONDS", "120"))
    USSD_MAX_MESSAGE_LENGTH = int(os.getenv("USSD_MAX_MESSAGE_LENGTH", "182"))
    USSD_MAX_INPUT_LENGTH = 160
    USSD_DEFAULT_LANGUAGE = os.getenv("USSD_DEFAULT_LANGUAGE", "hausa")
    USSD_RATE_LIMIT = int(os.getenv("USSD_RATE_LIMIT", "20"))
    USSD_RATE_WINDOW_MS = int(os.getenv("USSD_RATE_WINDOW_MS", str(60 * 60 * 1000)))
    SESSION_RETENTION_HOURS = 24

    # ── Incident API ─────────────────────────────────────────────────────
    INCIDENT_API_RATE_LIMIT = os.getenv("INCIDENT_API_RATE_LIMIT", "10 per 15 minutes")

    # ── Deduplication ────────────────────────────────────────────────────
    DEDUP_SIMILARITY_THRESHOLD = int(os.getenv("DEDUP_SIMILARITY_THRESHOLD", "60"))
    DEDUP_TIME_WINDOW_MINUTES = int(os.getenv("DEDUP_TIME_WINDOW_MINUTES", "60"))
    DEDUP_MAX_CANDIDATES = 100
    DEDUP_MAX_RESULTS = 5

    # ── Locale ───────────────────────────────────────────────────────────
    DEFAULT_STATE = os.getenv("DEFAULT_STATE", "Kano")
    LOCAL_TIMEZONE = os.getenv("LOCAL_TIMEZONE", "Africa/Lagos")
    PHONE_COUNTRY_CODE = os.getenv("PHONE_COUNTRY_CODE", "234")

    # ── SMS (Africa's Talking; log-only when AT_API_KEY is unset) ────────
    AT_API_KEY = os.getenv("AT_API_KEY")
    AT_USERNAME = os.getenv("AT_USERNAME", "sandbox")
    AT_SENDER_ID = os.getenv("AT_SENDER_ID")
    AT_SMS_URL = os.getenv("AT_SMS_URL", "https://api.africastalking.com/version1/messaging")
    SMS_TIMEOUT_SECONDS = float(os.getenv("SMS_TIMEOUT_SECONDS", "3"))
    SMS_MAX_ATTEMPTS = int(os.getenv("SMS_MAX_ATTEMPTS", "3"))
    # Total time a request may spend sending SMS; the rest waits for notification_retry
    SMS_REQUEST_BUDGET_SECONDS = float(os.getenv("SMS_REQUEST_BUDGET_SECONDS", "2.5"))

    # ── Alerts ───────────────────────────────────────────────────────────
    ALERT_CACHE_SECONDS = 30
    # Reporters with callback consent this recent receive alert broadcasts
    ALERT_SUBSCRIBER_DAYS = int(os.getenv("ALERT_SUBSCRIBER_DAYS", "7"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    ENV_NAME = "development"
    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    ENV_NAME = "testing"
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    # Rate limiter and SMS stay in-process under test
    REDIS_URL = "memory://"
    AT_API_KEY = None


class ProductionConfig(Config):
    """Production environment configuration."""

    ENV_NAME = "production"
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
