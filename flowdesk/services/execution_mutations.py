"""
Execution mutation layer: conditional, retry-safe status writes.

The engine retries its callbacks on network timeouts, and several callbacks
for one execution can arrive concurrently. Every status write therefore goes
through a conditional ``UPDATE ... WHERE status IN (<allowed predecessors>)``
whose row count decides the outcome, instead of a read-then-write in Python:

    applied : the row moved to the requested status
    noop    : the row is already in that terminal status (duplicate call)
    missing : no such execution (completion only)

Anything else is a backward move and raises InvalidTransitionError.

``complete_execution`` is the atomic path for terminal completion: the
execution row, the worker's availability and the activity entry are written
in one transaction. If that transaction fails at the store level it falls
back to sequential commits and logs a degraded-mode warning; a worker
update failing in that mode is not rolled back.

Usage:
    from flowdesk.services.execution_mutations import complete_execution

    result = complete_execution("exec-42", "completed", output_data={...}, worker_id=wid)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from flowdesk.core.exceptions import InvalidTransitionError, NotFoundError
from flowdesk.models import db, utcnow
from flowdesk.models.activity import write_activity
from flowdesk.models.execution import (
    TERMINAL_STATUSES,
    Execution,
    allowed_predecessors,
)
from flowdesk.models.workflow import DigitalWorker

logger = logging.getLogger(__name__)

APPLIED = "applied"
NOOP = "noop"
MISSING = "missing"
CREATED = "created"


@dataclass
class MutationResult:
    """Outcome of one mutation call."""

    ok: bool
    outcome: str
    status: str | None = None
    degraded: bool = False


def _match(execution_id: str):
    """Executions are addressed by engine id first; the internal id also resolves."""
    return or_(Execution.engine_execution_id == execution_id, Execution.id == execution_id)


def _find_execution_id(engine_execution_id: str) -> str | None:
    return (
        db.session.query(Execution.id)
        .filter(Execution.engine_execution_id == engine_execution_id)
        .scalar()
    )


def _current_status(execution_id: str) -> str | None:
    return db.session.query(Execution.status).filter(_match(execution_id)).scalar()


# ═════════════════════════════════════════════════════════════════════════════
# Progress writes
# ═════════════════════════════════════════════════════════════════════════════


def apply_status(
    engine_execution_id: str,
    new_status: str,
    *,
    step_index: int | None = None,
    step_name: str | None = None,
    output_data=None,
    error: str | None = None,
) -> str:
    """Conditionally move an existing execution to *new_status*.

    Does not commit. Returns APPLIED or NOOP.

    Raises:
        NotFoundError: no execution with that engine id.
        InvalidTransitionError: the stored status cannot move to *new_status*.
    """
    now = utcnow()
    values = {"status": new_status, "updated_at": now}
    if step_index is not None:
        values["current_step_index"] = step_index
    if step_name:
        values["current_step_name"] = step_name
    if output_data is not None:
        values["output_data"] = output_data
    if error:
        values["error"] = error
    if new_status in ("completed", "failed"):
        values["completed_at"] = now

    rows = (
        Execution.query
        .filter(
            Execution.engine_execution_id == engine_execution_id,
            Execution.status.in_(allowed_predecessors(new_status)),
        )
        .update(values, synchronize_session=False)
    )
    if rows:
        return APPLIED

    current = (
        db.session.query(Execution.status)
        .filter(Execution.engine_execution_id == engine_execution_id)
        .scalar()
    )
    if current is None:
        raise NotFoundError(resource="Execution", resource_id=engine_execution_id)
    if current == new_status and current in TERMINAL_STATUSES:
        return NOOP
    logger.warning(
        "Rejected status regression %s -> %s", current, new_status,
        extra={"execution_id": engine_execution_id},
    )
    raise InvalidTransitionError("Execution", engine_execution_id, current, new_status)


def upsert_status(
    engine_execution_id: str,
    new_status: str,
    *,
    workflow_id: str | None = None,
    worker_id: str | None = None,
    step_index: int | None = None,
    step_name: str | None = None,
    output_data=None,
    error: str | None = None,
) -> str:
    """Create the execution on first report, otherwise apply_status().

    The unique index on ``engine_execution_id`` decides duplicate first
    reports racing each other: the loser's insert fails and it continues
    down the update path. Must be the first write of the transaction,
    because losing the race rolls the session back. Does not commit.

    Returns CREATED, APPLIED or NOOP.
    """
    if _find_execution_id(engine_execution_id) is None:
        now = utcnow()
        execution = Execution(
            engine_execution_id=engine_execution_id,
            workflow_id=workflow_id,
            worker_id=worker_id,
            status=new_status,
            current_step_index=step_index or 0,
            current_step_name=step_name,
            output_data=output_data,
            error=error,
            started_at=now,
            completed_at=now if new_status in ("completed", "failed") else None,
        )
        db.session.add(execution)
        try:
            db.session.flush()
            return CREATED
        except IntegrityError:
            db.session.rollback()
            logger.info(
                "Concurrent first report detected; applying as update",
                extra={"execution_id": engine_execution_id},
            )

    return apply_status(
        engine_execution_id, new_status,
        step_index=step_index, step_name=step_name,
        output_data=output_data, error=error,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Terminal completion
# ═════════════════════════════════════════════════════════════════════════════


def _write_terminal(execution_id, status, output_data, error_text) -> str:
    now = utcnow()
    values = {
        "status": status,
        "error": error_text,
        "completed_at": now,
        "updated_at": now,
    }
    if output_data is not None:
        values["output_data"] = output_data

    rows = (
        Execution.query
        .filter(_match(execution_id), Execution.status.notin_(TERMINAL_STATUSES))
        .update(values, synchronize_session=False)
    )
    if rows:
        return APPLIED

    current = _current_status(execution_id)
    if current is None:
        return MISSING
    if current == status:
        return NOOP
    raise InvalidTransitionError("Execution", execution_id, current, status)


def _release_worker(worker_id, status) -> None:
    DigitalWorker.query.filter_by(id=worker_id).update(
        {
            "status": "active" if status == "completed" else "error",
            "current_execution_id": None,
            "updated_at": utcnow(),
        },
        synchronize_session=False,
    )


def _log_completion(execution_id, status, output_data, error_text, *,
                    workflow_id, worker_name, outcome, degraded) -> None:
    write_activity(
        "workflow_complete" if status == "completed" else "error",
        worker_name=worker_name,
        workflow_id=workflow_id,
        execution_id=execution_id,
        data={
            "executionId": execution_id,
            "status": status,
            "result": output_data,
            "error": error_text,
            "outcome": outcome,
            "degraded": degraded,
            "message": (
                "Workflow completed successfully"
                if status == "completed"
                else f"Workflow failed: {error_text}"
            ),
        },
    )


def _complete_atomic(execution_id, status, output_data, error_text, worker_id,
                     workflow_id, worker_name) -> str:
    outcome = _write_terminal(execution_id, status, output_data, error_text)
    if worker_id and outcome == APPLIED:
        _release_worker(worker_id, status)
    _log_completion(
        execution_id, status, output_data, error_text,
        workflow_id=workflow_id, worker_name=worker_name,
        outcome=outcome, degraded=False,
    )
    db.session.commit()
    return outcome


def _complete_sequential(execution_id, status, output_data, error_text, worker_id,
                         workflow_id, worker_name) -> str:
    outcome = _write_terminal(execution_id, status, output_data, error_text)
    db.session.commit()

    if worker_id and outcome == APPLIED:
        try:
            _release_worker(worker_id, status)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning(
                "Worker %s status update failed after execution completed: %s",
                worker_id, exc, extra={"execution_id": execution_id},
            )

    _log_completion(
        execution_id, status, output_data, error_text,
        workflow_id=workflow_id, worker_name=worker_name,
        outcome=outcome, degraded=True,
    )
    db.session.commit()
    return outcome


def _log_conflict(execution_id, exc: InvalidTransitionError, output_data, error_text, *,
                  workflow_id, worker_name) -> None:
    """Record a rejected completion in its own transaction."""
    try:
        write_activity(
            "error",
            worker_name=worker_name,
            workflow_id=workflow_id,
            execution_id=execution_id,
            data={
                "executionId": execution_id,
                "status": exc.requested_status,
                "currentStatus": exc.current_status,
                "result": output_data,
                "error": error_text,
                "outcome": "conflict",
                "message": (
                    f"Completion as '{exc.requested_status}' rejected: "
                    f"execution already '{exc.current_status}'"
                ),
            },
        )
        db.session.commit()
    except SQLAlchemyError as log_exc:
        db.session.rollback()
        logger.warning("Could not record rejected completion: %s", log_exc,
                       extra={"execution_id": execution_id})


def complete_execution(
    execution_id: str,
    status: str,
    output_data=None,
    error_text: str | None = None,
    worker_id: str | None = None,
    *,
    workflow_id: str | None = None,
    worker_name: str | None = None,
) -> MutationResult:
    """Mark an execution terminal and release its worker, at most once.

    Safe to call repeatedly with the same arguments: once the execution is
    terminal the conditional update matches nothing and the call is a NOOP.
    Every call appends one activity entry, including a rejected one.

    Raises:
        InvalidTransitionError: the execution is already terminal with a
            different status (an ``error`` activity with outcome
            ``conflict`` is committed first).
    """
    try:
        try:
            outcome = _complete_atomic(
                execution_id, status, output_data, error_text, worker_id,
                workflow_id, worker_name,
            )
            degraded = False
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning(
                "Atomic completion failed, falling back to sequential writes: %s", exc,
                extra={"execution_id": execution_id, "event_type": "degraded_completion"},
            )
            outcome = _complete_sequential(
                execution_id, status, output_data, error_text, worker_id,
                workflow_id, worker_name,
            )
            degraded = True
    except InvalidTransitionError as exc:
        db.session.rollback()
        logger.warning(
            "Rejected completion: already %s, requested %s", exc.current_status, status,
            extra={"execution_id": execution_id},
        )
        _log_conflict(execution_id, exc, output_data, error_text,
                      workflow_id=workflow_id, worker_name=worker_name)
        raise

    if outcome == MISSING:
        logger.warning("Completion reported for unknown execution", extra={"execution_id": execution_id})
    elif outcome == NOOP:
        logger.info("Duplicate completion ignored (already %s)", status,
                    extra={"execution_id": execution_id})

    return MutationResult(ok=True, outcome=outcome, status=status, degraded=degraded)
