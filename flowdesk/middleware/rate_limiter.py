"""
Per-blueprint request limits (Flask-Limiter).

The ``Limiter`` is created in ``flowdesk/__init__.py`` without default
limits; ``init_rate_limits`` attaches one limit per route category, keyed
on the caller's address. Counters live in Redis when ``REDIS_URL`` is set,
in process memory otherwise.

    review request create / poll   REVIEW_RATE_LIMIT     (default 30/minute)
    AI step execution              AI_ACTION_RATE_LIMIT  (default 60/minute)
    health probes                  exempt

Nothing is limited under TESTING.
"""

import logging

from flask import current_app

logger = logging.getLogger(__name__)

# blueprint name -> config key holding its limit string
_LIMITED_BLUEPRINTS = {
    "review_request_bp": ("REVIEW_RATE_LIMIT", "30/minute"),
    "ai_action_bp": ("AI_ACTION_RATE_LIMIT", "60/minute"),
}


def _limit_from_config(key, default):
    return lambda: current_app.config.get(key) or default


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        logger.info("Rate limiter disabled (TESTING=True)")
        return

    applied = []
    for name, (key, default) in _LIMITED_BLUEPRINTS.items():
        bp = app.blueprints.get(name)
        if bp is None:
            continue
        limiter.limit(_limit_from_config(key, default))(bp)
        applied.append(f"{name}={app.config.get(key) or default}")

    health = app.blueprints.get("health_bp")
    if health is not None:
        limiter.exempt(health)

    logger.info(
        "Rate limits applied: %s (storage: %s)",
        ", ".join(applied) or "none",
        "redis" if app.config.get("REDIS_URL") else "memory",
    )
