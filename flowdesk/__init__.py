"""
Flowdesk workflow coordinator: Flask application factory.

    from flowdesk import create_app
    app = create_app("testing")

Without an argument the environment comes from ``APP_ENV``.
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from flowdesk.config import config
from flowdesk.core.exceptions import (
    AuthError,
    ConflictError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from flowdesk.middleware.logging_config import configure_logging
from flowdesk.middleware.rate_limiter import init_rate_limits
from flowdesk.middleware.timing import init_request_timing
from flowdesk.models import db
from flowdesk.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL") or "memory://",  # Redis in production, memory for dev
)


def _ensure_sqlite_dir(uri):
    """Create the directory of a file-backed SQLite database."""
    prefix = "sqlite:///"
    if uri.startswith(prefix) and ":memory:" not in uri:
        os.makedirs(os.path.dirname(uri[len(prefix):]) or ".", exist_ok=True)


def _register_error_handlers(app):
    """Translate the platform exception hierarchy into JSON responses."""

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        db.session.rollback()
        code = E.VALIDATION_REQUIRED if str(e).startswith("Missing") else E.VALIDATION_INVALID
        return api_error(code, str(e), details=e.details)

    @app.errorhandler(AuthError)
    def handle_auth(e):
        db.session.rollback()
        return api_error(E.UNAUTHORIZED, str(e) or "Unauthorized")

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        db.session.rollback()
        return api_error(E.NOT_FOUND, e.public_message)

    @app.errorhandler(ConflictError)
    def handle_conflict(e):
        db.session.rollback()
        return api_error(E.CONFLICT_STATE, str(e), details=e.details)

    @app.errorhandler(UpstreamError)
    def handle_upstream(e):
        db.session.rollback()
        return e.to_dict(), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(e):
        db.session.rollback()
        logger.exception("Database error on %s", request.path)
        return api_error(E.DATABASE, "Database operation failed")

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", extra={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, "Method not allowed")

    @app.errorhandler(413)
    def payload_too_large(e):
        limit = app.config.get("MAX_CONTENT_LENGTH")
        return api_error(E.PAYLOAD_TOO_LARGE, "Request body too large", extra={"limit_bytes": limit})

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", extra={"retry_after": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("expire-reviews")
    def expire_reviews_cmd():
        """Expire overdue reviews and fail executions stuck waiting on them."""
        from flowdesk.services.cleanup_service import run_cleanup
        result = run_cleanup()
        click.echo(result["message"])


def create_app(config_name=None):
    """Build the coordinator app for ``config_name`` (default: ``APP_ENV``, then development).

    Wires logging, the store, CORS, request timing, the model gateway, the
    engine callback blueprints and their rate limits.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its secrets
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Model gateway ────────────────────────────────────────────────────
    from flowdesk.ai.gateway import init_model_gateway
    init_model_gateway(app)

    from flowdesk.services.step_plan import init_plan_cache
    init_plan_cache(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from flowdesk.blueprints.ai_action_bp import ai_action_bp
    from flowdesk.blueprints.cleanup_bp import cleanup_bp
    from flowdesk.blueprints.execution_bp import execution_bp
    from flowdesk.blueprints.health_bp import health_bp
    from flowdesk.blueprints.review_bp import review_request_bp, review_response_bp
    from flowdesk.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(execution_bp)
    app.register_blueprint(review_request_bp)
    app.register_blueprint(review_response_bp)
    app.register_blueprint(ai_action_bp)
    app.register_blueprint(cleanup_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(health_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # ── Schema (Flask-Migrate owns upgrades; create_all covers fresh DBs) ─
    with app.app_context():
        _ensure_sqlite_dir(app.config["SQLALCHEMY_DATABASE_URI"])
        import flowdesk.models.activity  # noqa: F401
        import flowdesk.models.execution  # noqa: F401
        import flowdesk.models.review  # noqa: F401
        import flowdesk.models.workflow  # noqa: F401
        db.create_all()

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    logger.info("Flowdesk started (config=%s)", config_name)
    return app
