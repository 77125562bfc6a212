"""
Flowdesk settings, one class per environment.

``create_app`` picks the class named by ``APP_ENV`` (development, testing,
production) and loads it with ``app.config.from_object``. Every value can be
overridden from the environment.
"""

import os
import secrets

_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
_LOCAL_DB = "sqlite:///" + os.path.join(_ROOT, "instance", "flowdesk_dev.db")


def _env_int(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _database_url(fallback=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme rewritten for SQLAlchemy."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    return url.replace("postgres://", "postgresql://", 1)


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Rate-limit storage when set, in-memory otherwise
    REDIS_URL = os.getenv("REDIS_URL", "")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024
    # Empty: DEBUG outside production, INFO in production
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")

    # ── Webhook gate ─────────────────────────────────────────────────────
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
    WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"

    # ── Generative model ─────────────────────────────────────────────────
    AI_PROVIDER = os.getenv("AI_PROVIDER", "gemini")
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    AI_MAX_RETRIES = _env_int("AI_MAX_RETRIES", 3)
    AI_INITIAL_DELAY_MS = _env_int("AI_INITIAL_DELAY_MS", 1000)
    AI_MAX_DELAY_MS = _env_int("AI_MAX_DELAY_MS", 10000)
    AI_JITTER_RATIO = float(os.getenv("AI_JITTER_RATIO", "0.3"))

    # ── Workflow engine (n8n) ────────────────────────────────────────────
    N8N_API_URL = os.getenv("N8N_API_URL", "http://localhost:5678/api/v1")
    N8N_API_KEY = os.getenv("N8N_API_KEY", "")
    ENGINE_CALLBACK_TIMEOUT_SECONDS = _env_int("ENGINE_CALLBACK_TIMEOUT_SECONDS", 10)
    ENGINE_CALLBACKS_INLINE = False

    # ── Review lifecycle ─────────────────────────────────────────────────
    REVIEW_TIMEOUT_HOURS = _env_int("REVIEW_TIMEOUT_HOURS", 72)
    STALE_EXECUTION_HOURS = _env_int("STALE_EXECUTION_HOURS", 168)  # 7 days
    REVIEW_RATE_LIMIT = os.getenv("REVIEW_RATE_LIMIT", "30/minute")
    AI_ACTION_RATE_LIMIT = os.getenv("AI_ACTION_RATE_LIMIT", "60/minute")

    # Compiled workflow plans kept per process
    PLAN_CACHE_SIZE = _env_int("PLAN_CACHE_SIZE", 256)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_LOCAL_DB)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False

    WEBHOOK_SECRET = "test-webhook-secret"
    AI_PROVIDER = "local"
    N8N_API_URL = "http://engine.test/api/v1"
    N8N_API_KEY = "test-engine-key"
    # Best-effort callbacks run on the request thread so tests can assert on them
    ENGINE_CALLBACKS_INLINE = True


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # 30s per statement
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [name for name, value in (
            ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
            ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ("WEBHOOK_SECRET", self.WEBHOOK_SECRET),
        ) if not value]
        if missing:
            raise RuntimeError("Missing required production settings: " + ", ".join(missing))


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
