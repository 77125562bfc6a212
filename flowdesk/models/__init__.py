"""
Flowdesk Workflow Coordinator
SQLAlchemy models package.

The ``db`` handle is shared by every model module and initialised by the
application factory (``db.init_app(app)``).
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def iso(value: datetime | None) -> str | None:
    """Serialise a timestamp, treating naive values (SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
