"""
Flowdesk Workflow Coordinator
Human review domain model.

Models:
    - ReviewRequest: a pending human decision blocking one step of an
      execution. Resolved exactly once (approved / rejected / edited) or
      expired by the cleanup job.

At most one *pending* review may exist per (execution_id, step_id); the
partial unique index below enforces it at the store level.
"""

from flowdesk.models import db, iso, new_uuid, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

REVIEW_TYPES = {"approval", "edit", "decision"}
REVIEW_STATUSES = {"pending", "approved", "rejected", "edited", "expired"}
DECISION_STATUSES = {"approved", "rejected", "edited"}

REVIEW_TRANSITIONS = {
    "pending":  ["approved", "rejected", "edited", "expired"],
    "approved": [],
    "rejected": [],
    "edited":   [],
    "expired":  [],
}

DEFAULT_STEP_ID = "default"


def validate_review_transition(old_status, new_status):
    """Return True if ReviewRequest status transition is valid."""
    return new_status in REVIEW_TRANSITIONS.get(old_status, [])


class ReviewRequest(db.Model):
    """A human approve / reject / edit decision holding up an execution step."""

    __tablename__ = "review_requests"
    __table_args__ = (
        db.Index(
            "uq_review_pending_step",
            "execution_id", "step_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
        db.Index("idx_review_status_timeout", "status", "timeout_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    execution_id = db.Column(
        db.String(100), nullable=False, index=True,
        comment="Engine execution id (Execution.engine_execution_id)",
    )
    step_id = db.Column(db.String(100), nullable=False, default=DEFAULT_STEP_ID)
    worker_name = db.Column(db.String(150), nullable=False, default="n8n Workflow")
    action_type = db.Column(db.String(20), nullable=False, comment="approval | edit | decision")
    action_payload = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), nullable=False, default="pending")

    # Decision metadata
    feedback = db.Column(db.Text, nullable=True)
    edited_data = db.Column(db.JSON, nullable=True)
    reviewer_id = db.Column(db.String(100), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Engine callbacks
    resume_webhook_url = db.Column(db.String(500), nullable=True)
    callback_url = db.Column(db.String(500), nullable=True, comment="Legacy callback address")

    chat_history = db.Column(db.JSON, default=list)
    timeout_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_dict(self):
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "worker_name": self.worker_name,
            "action_type": self.action_type,
            "action_payload": self.action_payload or {},
            "status": self.status,
            "feedback": self.feedback,
            "edited_data": self.edited_data,
            "reviewer_id": self.reviewer_id,
            "reviewed_at": iso(self.reviewed_at),
            "resume_webhook_url": self.resume_webhook_url,
            "chat_history": self.chat_history or [],
            "timeout_at": iso(self.timeout_at),
            "created_at": iso(self.created_at),
        }

    def to_poll_dict(self):
        """Shape returned to engines polling for a decision."""
        return {
            "id": self.id,
            "status": self.status,
            "actionType": self.action_type,
            "actionPayload": self.action_payload or {},
            "chatHistory": self.chat_history or [],
            "createdAt": iso(self.created_at),
        }

    def __repr__(self):
        return f"<ReviewRequest {self.id} exec={self.execution_id} step={self.step_id} {self.status}>"
