"""
AI action service: audit trail around one AI step execution.

Every call appends ``workflow_step_execution`` before the model is invoked
and one of ``workflow_step_complete`` / ``workflow_step_guidance`` /
``workflow_step_error`` afterwards. The entry row is committed before the
model call so it survives a failed step.
"""

import logging

from flowdesk.ai.gateway import classify_error, get_model_gateway
from flowdesk.ai.step_executor import NeedsGuidance, StepExecutor, StepRequest
from flowdesk.core.exceptions import ValidationError
from flowdesk.models import db
from flowdesk.models.activity import write_activity

logger = logging.getLogger(__name__)


def _log(activity_type: str, step: StepRequest, **data) -> None:
    write_activity(
        activity_type,
        worker_name=step.worker_name,
        workflow_id=step.workflow_id,
        execution_id=step.execution_id,
        step_id=step.step_id,
        data={"stepId": step.step_id, "stepLabel": step.step_label, **data},
    )
    db.session.commit()


def run_ai_action(data: dict) -> dict:
    """Execute one AI step and return the success or guidance body.

    Raises:
        ValidationError: workflowId / stepId missing.
        UpstreamError: classified model failure (carries status + errorType).
    """
    if not data.get("workflowId") or data.get("stepId") in (None, ""):
        raise ValidationError("Missing required fields: workflowId and stepId")

    step = StepRequest.from_payload(data)
    _log("workflow_step_execution", step, message=f"Executing AI action: {step.step_label}")

    executor = StepExecutor(get_model_gateway())
    try:
        outcome = executor.execute(step)
    except Exception as exc:
        classified = classify_error(exc, context=f"Step: {step.step_label or 'unknown'}")
        logger.warning("AI step failed (%s): %s", classified.error_type, exc,
                       extra={"step_id": step.step_id, "workflow_id": step.workflow_id})
        _log(
            "workflow_step_error", step,
            errorType=classified.error_type,
            errorMessage=str(classified),
            retryable=classified.retryable,
        )
        raise classified from exc

    if isinstance(outcome, NeedsGuidance):
        _log(
            "workflow_step_guidance", step,
            guidanceQuestion=outcome.question,
            message=f"AI action needs guidance: {step.step_label}",
        )
        return outcome.to_dict()

    _log(
        "workflow_step_complete", step,
        result=outcome.result,
        message=f"AI action completed: {step.step_label}",
    )
    return outcome.to_dict()
