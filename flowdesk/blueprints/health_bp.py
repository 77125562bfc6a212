"""
Health probes.

    GET /api/v1/health/ready   process is up (load balancer probe)
    GET /api/v1/health/live    store, limiter backend, model and engine settings

Only the store decides the overall status; the other checks are informational.
"""

import logging
import time

import redis
from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from flowdesk.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


def _elapsed_ms(started):
    return round((time.perf_counter() - started) * 1000, 1)


def _check_database():
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check: store unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": _elapsed_ms(started)}


def _check_redis(url):
    if not url.startswith(("redis://", "rediss://")):
        return {"status": "skipped", "detail": "no REDIS_URL configured"}
    started = time.perf_counter()
    try:
        redis.from_url(url, socket_timeout=2).ping()
    except redis.RedisError as exc:
        logger.warning("Health check: rate limit storage unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": _elapsed_ms(started)}


def _check_model(cfg):
    provider = cfg.get("AI_PROVIDER")
    ready = provider == "local" or bool(cfg.get("GEMINI_API_KEY"))
    return {"status": "ok" if ready else "unconfigured", "provider": provider}


def _check_engine(cfg):
    return {
        "status": "ok" if cfg.get("N8N_API_KEY") else "unconfigured",
        "base_url": cfg.get("N8N_API_URL"),
        "webhook_signing": bool(cfg.get("WEBHOOK_SECRET")),
    }


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    cfg = current_app.config
    checks = {
        "database": _check_database(),
        "redis": _check_redis(cfg.get("REDIS_URL", "")),
        "model": _check_model(cfg),
        "engine": _check_engine(cfg),
    }
    healthy = checks["database"]["status"] == "ok"
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
