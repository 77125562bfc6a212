"""
Flowdesk Workflow Coordinator
Workflow domain models.

Models:
    - Workflow: an automation graph deployed to the engine (read-mostly here;
      authored by the editor, which lives outside this service)
    - DigitalWorker: the worker persona that runs workflows; its availability
      flips when an execution completes
"""

from flowdesk.models import db, iso, new_uuid, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_STATUSES = {"draft", "active", "paused", "archived"}
WORKER_STATUSES = {"active", "busy", "paused", "error"}


class Workflow(db.Model):
    """An automation graph. ``steps`` holds the ordered step definitions."""

    __tablename__ = "workflows"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="draft")
    engine_workflow_id = db.Column(
        db.String(100), nullable=True, index=True,
        comment="Workflow id inside the external engine",
    )
    steps = db.Column(db.JSON, default=list, comment="[{id, type, label, ...}]")

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "engine_workflow_id": self.engine_workflow_id,
            "steps": self.steps or [],
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name}>"


class DigitalWorker(db.Model):
    """A worker persona. ``status`` is 'busy' while it runs an execution."""

    __tablename__ = "digital_workers"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    name = db.Column(db.String(150), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active")
    current_execution_id = db.Column(db.String(36), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "current_execution_id": self.current_execution_id,
            "updated_at": iso(self.updated_at),
        }
