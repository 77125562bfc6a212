"""
Execution Service: lifecycle of one workflow run as reported by the engine.

Operations:
  - report_progress:    upsert by engine execution id, step index, activity row
  - complete:           terminal completion via the mutation layer
  - get_execution:      full record + workflow display name (internal id)
  - get_by_engine_id:   same record keyed by the engine's execution id

Status writes never move an execution backward; see
``flowdesk.models.execution.EXECUTION_TRANSITIONS``.
"""

from __future__ import annotations

import logging

from flowdesk.core.exceptions import NotFoundError, ValidationError
from flowdesk.models import db
from flowdesk.models.activity import write_activity
from flowdesk.models.execution import EXECUTION_STATUSES, TERMINAL_STATUSES, Execution
from flowdesk.models.workflow import Workflow
from flowdesk.services import execution_mutations as mutations

logger = logging.getLogger(__name__)


def _progress_activity_type(status: str) -> str:
    if status == "completed":
        return "execution_completed"
    if status == "failed":
        return "execution_failed"
    return "execution_progress"


def _coerce_step_index(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        index = int(value)
    except (TypeError, ValueError):
        raise ValidationError("currentStepIndex must be an integer",
                              details={"currentStepIndex": value})
    if index < 0:
        raise ValidationError("currentStepIndex must be >= 0",
                              details={"currentStepIndex": value})
    return index


def report_progress(data: dict) -> dict:
    """Apply one progress report from the engine.

    Body keys: executionId*, status*, workflowId?, workerId?,
    currentStepIndex?, currentStepName?, outputData?, error?

    Returns:
        {"executionId", "status", "created"}

    Raises:
        ValidationError: executionId / status missing or malformed.
        InvalidTransitionError: the report would move a terminal execution.
    """
    execution_id = data.get("executionId")
    status = data.get("status")
    if not execution_id or not status:
        raise ValidationError("Missing required fields: executionId, status")
    if status not in EXECUTION_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(EXECUTION_STATUSES)}",
            details={"status": status},
        )
    execution_id = str(execution_id)
    step_index = _coerce_step_index(data.get("currentStepIndex"))

    outcome = mutations.upsert_status(
        execution_id,
        status,
        workflow_id=data.get("workflowId"),
        worker_id=data.get("workerId"),
        step_index=step_index,
        step_name=data.get("currentStepName"),
        output_data=data.get("outputData"),
        error=data.get("error"),
    )

    write_activity(
        _progress_activity_type(status),
        workflow_id=data.get("workflowId"),
        execution_id=execution_id,
        data={
            "executionId": execution_id,
            "status": status,
            "currentStepIndex": step_index,
            "currentStepName": data.get("currentStepName"),
            "outputData": data.get("outputData"),
            "error": data.get("error"),
            "outcome": outcome,
        },
    )
    db.session.commit()

    logger.info("Execution progress %s (%s)", status, outcome,
                extra={"execution_id": execution_id, "event_type": "execution_progress"})
    return {
        "executionId": execution_id,
        "status": status,
        "created": outcome == mutations.CREATED,
    }


def complete(data: dict) -> dict:
    """Handle the engine's completion callback.

    Body keys: workflowId*, executionId?, workerId?, status?='completed',
    result?, error?, workerName?

    Without an executionId there is no row to update; the call only leaves
    an activity entry.
    """
    workflow_id = data.get("workflowId")
    if not workflow_id:
        raise ValidationError("Missing required field: workflowId")

    requested = data.get("status") or "completed"
    status = requested if requested in TERMINAL_STATUSES else "failed"
    execution_id = data.get("executionId")
    result = data.get("result")
    error_text = data.get("error")
    worker_name = data.get("workerName")

    if execution_id:
        mutation = mutations.complete_execution(
            str(execution_id),
            status,
            output_data=result,
            error_text=error_text,
            worker_id=data.get("workerId"),
            workflow_id=workflow_id,
            worker_name=worker_name,
        )
        outcome = mutation.outcome
    else:
        write_activity(
            "workflow_complete" if status == "completed" else "error",
            worker_name=worker_name,
            workflow_id=workflow_id,
            data={
                "status": status,
                "result": result,
                "error": error_text,
                "message": (
                    "Workflow completed successfully"
                    if status == "completed"
                    else f"Workflow failed: {error_text}"
                ),
            },
        )
        db.session.commit()
        outcome = "logged"

    return {
        "success": True,
        "message": f"Workflow execution {status}",
        "status": status,
        "outcome": outcome,
    }


def _with_workflow_name(execution: Execution) -> dict:
    body = execution.to_dict()
    workflow = db.session.get(Workflow, execution.workflow_id) if execution.workflow_id else None
    if workflow is None and execution.workflow_id:
        workflow = Workflow.query.filter_by(engine_workflow_id=execution.workflow_id).first()
    body["workflow_name"] = workflow.name if workflow else None
    return body


def get_execution(execution_id: str) -> dict:
    """Return the execution (internal id) joined with its workflow name."""
    execution = db.session.get(Execution, execution_id)
    if execution is None:
        raise NotFoundError(resource="Execution", resource_id=execution_id)
    return _with_workflow_name(execution)


def get_by_engine_id(engine_execution_id: str) -> dict:
    """Return the execution addressed by the engine's own id."""
    execution = Execution.query.filter_by(engine_execution_id=engine_execution_id).first()
    if execution is None:
        raise NotFoundError(resource="Execution", resource_id=engine_execution_id)
    return _with_workflow_name(execution)
