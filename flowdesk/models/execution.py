"""
Flowdesk Workflow Coordinator
Execution domain model.

Models:
    - Execution: one run of a workflow, keyed both by an internal id and by
      the engine's own execution id (the join key between the two systems).

State machine (EXECUTION_TRANSITIONS):
    pending        -> running | waiting_review | completed | failed | cancelled
    running        -> waiting_review | completed | failed | cancelled
    waiting_review -> running | completed | failed | cancelled
    completed / failed / cancelled -> (terminal)

Re-reporting the current non-terminal status is allowed (progress updates
carry a new step index). Re-reporting a terminal status is a no-op.
"""

from flowdesk.models import db, iso, new_uuid, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

EXECUTION_STATUSES = {
    "pending", "running", "waiting_review", "completed", "failed", "cancelled",
}
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

EXECUTION_TRANSITIONS = {
    "pending":        ["pending", "running", "waiting_review", "completed", "failed", "cancelled"],
    "running":        ["running", "waiting_review", "completed", "failed", "cancelled"],
    "waiting_review": ["waiting_review", "running", "completed", "failed", "cancelled"],
    "completed":      [],
    "failed":         [],
    "cancelled":      [],
}


def validate_execution_transition(old_status, new_status):
    """Return True if an Execution may move from *old_status* to *new_status*."""
    return new_status in EXECUTION_TRANSITIONS.get(old_status, [])


def allowed_predecessors(new_status) -> list[str]:
    """Statuses from which *new_status* may be written (used in conditional UPDATEs)."""
    return [src for src, targets in EXECUTION_TRANSITIONS.items() if new_status in targets]


class Execution(db.Model):
    """
    One workflow run.

    Created on the engine's first progress report (upsert by
    ``engine_execution_id``) and mutated only through the conditional
    updates in ``flowdesk.services.execution_mutations``.
    """

    __tablename__ = "executions"
    __table_args__ = (
        db.Index("idx_execution_status_created", "status", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    engine_execution_id = db.Column(
        db.String(100), nullable=False, unique=True,
        comment="Execution id inside the external engine",
    )
    workflow_id = db.Column(db.String(100), nullable=True, index=True)
    worker_id = db.Column(db.String(36), nullable=True, index=True)

    status = db.Column(db.String(20), nullable=False, default="pending")
    current_step_index = db.Column(db.Integer, nullable=False, default=0)
    current_step_name = db.Column(db.String(200), nullable=True)

    output_data = db.Column(db.JSON, nullable=True)
    error = db.Column(db.Text, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "engine_execution_id": self.engine_execution_id,
            "workflow_id": self.workflow_id,
            "worker_id": self.worker_id,
            "status": self.status,
            "current_step_index": self.current_step_index,
            "current_step_name": self.current_step_name,
            "output_data": self.output_data,
            "error": self.error,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Execution {self.id} engine={self.engine_execution_id} status={self.status}>"
