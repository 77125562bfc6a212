"""
Flowdesk Workflow Coordinator
Activity log model.

Models:
    - ActivityLog: immutable, append-only audit trail. Every execution,
      review and AI-step transition appends one row; the dashboard reads
      them (outside this service).
"""

import logging

from flowdesk.models import db, iso, utcnow

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_TYPES = {
    # Execution lifecycle
    "execution_progress",
    "execution_completed",
    "execution_failed",
    "workflow_complete",
    "error",
    # Reviews
    "review_requested",
    "review_completed",
    "review_approved",
    "review_rejected",
    "review_expired",
    # AI steps
    "workflow_step_execution",
    "workflow_step_complete",
    "workflow_step_guidance",
    "workflow_step_error",
    # Maintenance
    "cleanup_run",
}


class ActivityLog(db.Model):
    """One audit row. Never updated after insert."""

    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("idx_activity_type", "type"),
        db.Index("idx_activity_execution", "execution_id"),
        db.Index("idx_activity_created", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(60), nullable=False)
    worker_name = db.Column(db.String(150), nullable=True)
    workflow_id = db.Column(db.String(100), nullable=True)
    execution_id = db.Column(db.String(100), nullable=True)
    step_id = db.Column(db.String(100), nullable=True)
    data = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "worker_name": self.worker_name,
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "data": self.data or {},
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.type} exec={self.execution_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_activity(
    activity_type: str,
    *,
    worker_name: str | None = None,
    workflow_id: str | None = None,
    execution_id: str | None = None,
    step_id: str | None = None,
    data: dict | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) ActivityLog instance.
    """
    if activity_type not in ACTIVITY_TYPES:
        logger.warning("Unregistered activity type '%s'", activity_type)

    entry = ActivityLog(
        type=activity_type,
        worker_name=worker_name,
        workflow_id=str(workflow_id) if workflow_id is not None else None,
        execution_id=str(execution_id) if execution_id is not None else None,
        step_id=str(step_id) if step_id is not None else None,
        data=data or {},
    )
    db.session.add(entry)
    db.session.flush()
    return entry
