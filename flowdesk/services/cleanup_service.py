"""
Cleanup Service: expires stale reviews so executions never stay suspended.

Invoked on a schedule from outside (cron calling ``POST /api/v1/engine/cleanup``
or ``flask expire-reviews``); nothing here schedules itself.

    1. Pending reviews past ``timeout_at`` → ``expired``; their executions,
       if still ``waiting_review``, → ``failed``.
    2. Executions sitting in ``waiting_review`` longer than
       ``STALE_EXECUTION_HOURS`` → ``failed`` (reviews that were never created).

Each review is expired with its own ``WHERE status = 'pending'`` update, so a
human decision landing at the same moment wins or loses cleanly.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from flowdesk.models import db, iso, utcnow
from flowdesk.models.activity import write_activity
from flowdesk.models.execution import Execution
from flowdesk.models.review import REVIEW_STATUSES, ReviewRequest

logger = logging.getLogger(__name__)

EXPIRED_FEEDBACK = "Automatically expired due to timeout"
REVIEW_TIMEOUT_ERROR = "Review request timed out"
STALE_EXECUTION_ERROR = "Execution timed out - stuck in waiting state"


def _fail_waiting(query, error_text, now) -> int:
    return query.filter(Execution.status == "waiting_review").update(
        {"status": "failed", "error": error_text, "completed_at": now, "updated_at": now},
        synchronize_session=False,
    )


def run_cleanup(now=None) -> dict:
    """Expire overdue reviews and fail stuck executions; returns counts."""
    now = now or utcnow()
    stale_hours = current_app.config["STALE_EXECUTION_HOURS"]

    candidates = (
        db.session.query(ReviewRequest.id, ReviewRequest.execution_id, ReviewRequest.step_id,
                         ReviewRequest.worker_name)
        .filter(ReviewRequest.status == "pending", ReviewRequest.timeout_at < now)
        .all()
    )

    expired = []
    for review_id, execution_id, step_id, worker_name in candidates:
        rows = (
            ReviewRequest.query
            .filter(ReviewRequest.id == review_id, ReviewRequest.status == "pending")
            .update(
                {"status": "expired", "reviewed_at": now, "feedback": EXPIRED_FEEDBACK,
                 "updated_at": now},
                synchronize_session=False,
            )
        )
        if not rows:
            continue
        expired.append(review_id)
        write_activity(
            "review_expired",
            worker_name=worker_name,
            execution_id=execution_id,
            step_id=step_id,
            data={"reviewId": review_id, "executionId": execution_id},
        )

    timed_out = 0
    if expired:
        execution_ids = {
            row[0] for row in
            db.session.query(ReviewRequest.execution_id).filter(ReviewRequest.id.in_(expired))
        }
        timed_out = _fail_waiting(
            Execution.query.filter(Execution.engine_execution_id.in_(execution_ids)),
            REVIEW_TIMEOUT_ERROR, now,
        )

    threshold = now - timedelta(hours=stale_hours)
    stale = _fail_waiting(
        Execution.query.filter(Execution.created_at < threshold),
        STALE_EXECUTION_ERROR, now,
    )

    result = {
        "success": True,
        "expiredReviewCount": len(expired),
        "timedOutExecutionCount": timed_out,
        "staleExecutionCount": stale,
        "message": f"Cleaned up {len(expired)} expired reviews and {stale} stale executions",
    }
    write_activity(
        "cleanup_run",
        worker_name="System Cleanup",
        data={**result, "cleanupTime": iso(now)},
    )
    db.session.commit()

    logger.info("Cleanup completed: %d expired reviews, %d timed-out executions, %d stale executions",
                len(expired), timed_out, stale, extra={"event_type": "cleanup_run"})
    return result


def cleanup_status(now=None) -> dict:
    """Read-only view: review counts by status and reviews expiring within 24h."""
    now = now or utcnow()
    counts = dict(
        db.session.query(ReviewRequest.status, func.count(ReviewRequest.id))
        .group_by(ReviewRequest.status)
        .all()
    )
    status_counts = {status: counts.get(status, 0) for status in sorted(REVIEW_STATUSES)}
    expiring_soon = (
        ReviewRequest.query
        .filter(ReviewRequest.status == "pending",
                ReviewRequest.timeout_at < now + timedelta(hours=24))
        .count()
    )
    return {
        "reviewStatusCounts": status_counts,
        "expiringSoon24h": expiring_soon,
        "lastChecked": iso(now),
    }
