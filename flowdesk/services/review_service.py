"""
Review Service: human-in-the-loop suspension and resumption of executions.

Operations:
  - create_review:     open a pending review for (execution, step); duplicates
                       return the existing pending review
  - respond:           record the human decision once, then resume the engine
  - poll:              current review state for engines that cannot be pushed to
  - append_chat:       add a guidance message to a pending review
  - manual_resume:     operator-driven approve/reject straight to the engine
  - list_pending_for_execution

Decisions are written with a conditional ``UPDATE ... WHERE status = 'pending'``
so a decision racing another decision (or the expiry job) applies at most once.
Engine calls happen after the decision is committed; their failure is logged
and never undoes the decision.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from flowdesk.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from flowdesk.integrations.engine_gateway import build_resume_url, engine_gateway
from flowdesk.models import db, iso, utcnow
from flowdesk.models.activity import write_activity
from flowdesk.models.review import (
    DECISION_STATUSES,
    DEFAULT_STEP_ID,
    REVIEW_TYPES,
    ReviewRequest,
)
from flowdesk.services import execution_mutations as mutations

logger = logging.getLogger(__name__)

DEFAULT_WORKER_NAME = "n8n Workflow"


def _find_pending(execution_id: str, step_id: str) -> ReviewRequest | None:
    return ReviewRequest.query.filter_by(
        execution_id=execution_id, step_id=step_id, status="pending",
    ).first()


def _get_review(review_id: str) -> ReviewRequest:
    review = db.session.get(ReviewRequest, review_id)
    if review is None:
        raise NotFoundError(resource="Review request", resource_id=review_id)
    return review


def _timeout_hours(value) -> float:
    if value is None or value == "":
        return current_app.config["REVIEW_TIMEOUT_HOURS"]
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError("timeoutHours must be a number", details={"timeoutHours": value})
    if hours <= 0:
        raise ValidationError("timeoutHours must be > 0", details={"timeoutHours": value})
    return hours


def _step_id(value, default: str) -> str:
    """Engine step ids may be numeric; only a missing or empty id takes the default."""
    if value is None or value == "":
        return default
    return str(value)


def _existing_response(review: ReviewRequest) -> dict:
    return {
        "reviewId": review.id,
        "status": review.status,
        "message": "Pending review already exists for this step",
        "resumeWebhookUrl": review.resume_webhook_url,
        "alreadyExists": True,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Create / poll
# ═════════════════════════════════════════════════════════════════════════════


def create_review(data: dict) -> dict:
    """Open a pending review and suspend the owning execution.

    Body keys: executionId*, reviewType*, stepId?, workflowId?, workerName?,
    stepLabel?, data?, callbackUrl?, timeoutHours?

    Raises:
        ValidationError: executionId / reviewType missing or unknown type.
        InvalidTransitionError: the execution is already terminal.
    """
    execution_id = data.get("executionId")
    review_type = data.get("reviewType")
    if not execution_id or not review_type:
        raise ValidationError("Missing required fields: executionId, reviewType")
    if review_type not in REVIEW_TYPES:
        raise ValidationError(
            f"reviewType must be one of {sorted(REVIEW_TYPES)}",
            details={"reviewType": review_type},
        )
    execution_id = str(execution_id)
    step_id = _step_id(data.get("stepId"), DEFAULT_STEP_ID)
    hours = _timeout_hours(data.get("timeoutHours"))

    existing = _find_pending(execution_id, step_id)
    if existing is not None:
        logger.info("Duplicate review request suppressed",
                    extra={"execution_id": execution_id, "step_id": step_id, "review_id": existing.id})
        return _existing_response(existing)

    worker_name = data.get("workerName") or DEFAULT_WORKER_NAME
    callback_url = data.get("callbackUrl")
    resume_url = build_resume_url(current_app.config["N8N_API_URL"], execution_id, step_id)

    # Execution write goes first: upsert_status may roll the session back.
    mutations.upsert_status(execution_id, "waiting_review", workflow_id=data.get("workflowId"))

    now = utcnow()
    review = ReviewRequest(
        execution_id=execution_id,
        step_id=step_id,
        worker_name=worker_name,
        action_type=review_type,
        action_payload={
            "stepLabel": data.get("stepLabel"),
            "data": data.get("data"),
            "callbackUrl": callback_url,
            "workflowId": data.get("workflowId"),
            "resumeWebhookUrl": resume_url,
        },
        status="pending",
        resume_webhook_url=resume_url,
        callback_url=callback_url,
        chat_history=[],
        timeout_at=now + timedelta(hours=hours),
        created_at=now,
    )
    db.session.add(review)
    try:
        db.session.flush()
    except IntegrityError:
        # A concurrent create for the same step won the partial unique index
        db.session.rollback()
        existing = _find_pending(execution_id, step_id)
        if existing is None:
            raise
        return _existing_response(existing)

    write_activity(
        "review_requested",
        worker_name=worker_name,
        workflow_id=data.get("workflowId"),
        execution_id=execution_id,
        step_id=step_id,
        data={
            "reviewId": review.id,
            "reviewType": review_type,
            "stepLabel": data.get("stepLabel"),
            "executionId": execution_id,
        },
    )
    db.session.commit()

    logger.info("Review %s requested", review.id,
                extra={"execution_id": execution_id, "step_id": step_id, "review_id": review.id})
    return {
        "reviewId": review.id,
        "status": "pending",
        "message": "Review request created successfully",
        "resumeWebhookUrl": resume_url,
    }


def poll(review_id: str | None) -> dict:
    if not review_id:
        raise ValidationError("Missing review ID")
    return _get_review(review_id).to_poll_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


def _resolve(review: ReviewRequest, status: str, payload_extra: dict, **columns) -> None:
    """Move a pending review to *status* at most once. Does not commit.

    Raises:
        ConflictError: the review was no longer pending.
    """
    now = utcnow()
    payload = dict(review.action_payload or {})
    payload.update(payload_extra)
    payload["reviewedAt"] = iso(now)
    values = {
        "status": status,
        "action_payload": payload,
        "reviewed_at": now,
        "updated_at": now,
        **columns,
    }
    rows = (
        ReviewRequest.query
        .filter(ReviewRequest.id == review.id, ReviewRequest.status == "pending")
        .update(values, synchronize_session=False)
    )
    if not rows:
        db.session.rollback()
        current = db.session.query(ReviewRequest.status).filter_by(id=review.id).scalar()
        raise ConflictError(
            f"Review request is already {current}",
            details={"reviewId": review.id, "currentStatus": current},
        )


def _move_execution(engine_execution_id: str, status: str) -> bool:
    try:
        mutations.apply_status(engine_execution_id, status)
    except NotFoundError:
        logger.warning("No execution row to move to %s", status,
                       extra={"execution_id": engine_execution_id})
        return False
    except InvalidTransitionError as exc:
        db.session.rollback()
        logger.warning("Execution not moved after review: %s", exc,
                       extra={"execution_id": engine_execution_id})
        return False
    db.session.commit()
    return True


def respond(data: dict) -> dict:
    """Record a human decision and resume the engine.

    Body keys: reviewId*, status* (approved | rejected | edited), feedback?,
    editedData?, reviewerId?

    The decision is committed before the engine is called. The resume call
    runs on the request thread so ``workflowResumed`` can report its result,
    which means the response can take up to ENGINE_CALLBACK_TIMEOUT_SECONDS
    when the engine is slow. The legacy ``callbackUrl`` notification is
    fire-and-forget and does not delay the response.

    Raises:
        ValidationError: missing fields or unknown status.
        NotFoundError: unknown review id.
        ConflictError: the review was already resolved or expired.
    """
    review_id = data.get("reviewId")
    status = data.get("status")
    if not review_id or not status:
        raise ValidationError("Missing required fields: reviewId, status")
    if status not in DECISION_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(DECISION_STATUSES)}",
            details={"status": status},
        )

    review = _get_review(review_id)
    feedback = data.get("feedback")
    edited_data = data.get("editedData")
    reviewer_id = data.get("reviewerId")

    _resolve(
        review, status,
        {"feedback": feedback, "editedData": edited_data, "reviewerId": reviewer_id},
        feedback=feedback,
        edited_data=edited_data,
        reviewer_id=reviewer_id,
    )
    write_activity(
        "review_completed",
        worker_name=review.worker_name,
        execution_id=review.execution_id,
        step_id=review.step_id,
        data={"reviewId": review.id, "status": status, "feedback": feedback},
    )
    db.session.commit()
    db.session.refresh(review)

    approved = status in ("approved", "edited")
    cfg = current_app.config
    payload = review.action_payload or {}
    resume_body = {
        "approved": approved,
        "reviewId": review.id,
        "status": status,
        "feedback": feedback,
        "editedData": edited_data,
        "reviewerId": reviewer_id,
        "responseData": edited_data if edited_data is not None else payload.get("data"),
        "reviewedAt": iso(review.reviewed_at),
    }

    workflow_resumed = False
    if review.resume_webhook_url:
        result = engine_gateway.post_json(
            review.resume_webhook_url, resume_body,
            api_key=cfg["N8N_API_KEY"], timeout=cfg["ENGINE_CALLBACK_TIMEOUT_SECONDS"],
        )
        if result.ok:
            workflow_resumed = True
            _move_execution(review.execution_id, "running" if approved else "failed")
        else:
            logger.warning("Resume call failed; engine will poll for the decision: %s",
                           result.error, extra={"review_id": review.id,
                                                "execution_id": review.execution_id})

    legacy_url = review.callback_url
    if legacy_url and legacy_url != review.resume_webhook_url:
        engine_gateway.fire_and_forget(
            legacy_url, resume_body,
            label="review-callback",
            timeout=cfg["ENGINE_CALLBACK_TIMEOUT_SECONDS"],
            inline=cfg["ENGINE_CALLBACKS_INLINE"],
        )

    logger.info("Review %s %s (resumed=%s)", review.id, status, workflow_resumed,
                extra={"review_id": review.id, "execution_id": review.execution_id})
    return {
        "success": True,
        "reviewId": review.id,
        "status": status,
        "workflowResumed": workflow_resumed,
        "message": f"Review {status} successfully",
    }


def append_chat(review_id: str, data: dict) -> dict:
    """Append a guidance message to a pending review's chat history."""
    content = data.get("content")
    if not content or not str(content).strip():
        raise ValidationError("Missing required field: content")
    role = data.get("role") or "user"
    if role not in ("user", "assistant", "system"):
        raise ValidationError("role must be one of user, assistant, system", details={"role": role})

    review = _get_review(review_id)
    history = list(review.chat_history or [])
    history.append({"role": role, "content": str(content), "timestamp": iso(utcnow())})

    rows = (
        ReviewRequest.query
        .filter(ReviewRequest.id == review_id, ReviewRequest.status == "pending")
        .update({"chat_history": history, "updated_at": utcnow()}, synchronize_session=False)
    )
    if not rows:
        db.session.rollback()
        raise ConflictError(f"Review request is already {review.status}",
                            details={"reviewId": review_id, "currentStatus": review.status})
    db.session.commit()
    return {"success": True, "reviewId": review_id, "chatHistory": history}


def manual_resume(engine_execution_id: str, data: dict) -> dict:
    """Operator path: resolve a review as approved/rejected and push it to the engine.

    Body keys: reviewId*, approved*, stepId?, responseData?, reviewerNotes?
    """
    review_id = data.get("reviewId")
    approved = data.get("approved")
    if not review_id or approved is None:
        raise ValidationError("Missing required fields: reviewId, approved")
    if not isinstance(approved, bool):
        raise ValidationError("approved must be a boolean", details={"approved": approved})

    review = _get_review(review_id)
    if review.execution_id != engine_execution_id:
        raise ValidationError(
            "Review does not belong to this execution",
            details={"reviewId": review_id, "executionId": engine_execution_id},
        )

    cfg = current_app.config
    target_url = review.resume_webhook_url
    if not target_url:
        target_url = build_resume_url(
            cfg["N8N_API_URL"], engine_execution_id, _step_id(data.get("stepId"), review.step_id),
        )
        logger.warning("Resume webhook URL not stored, using %s", target_url,
                       extra={"review_id": review_id})

    new_status = "approved" if approved else "rejected"
    response_data = data.get("responseData")
    reviewer_notes = data.get("reviewerNotes")

    _resolve(
        review, new_status,
        {"reviewerNotes": reviewer_notes, "responseData": response_data},
        feedback=reviewer_notes,
    )
    write_activity(
        "review_approved" if approved else "review_rejected",
        worker_name=review.worker_name,
        execution_id=engine_execution_id,
        step_id=review.step_id,
        data={
            "reviewId": review_id,
            "executionId": engine_execution_id,
            "stepId": review.step_id,
            "approved": approved,
            "reviewerNotes": reviewer_notes,
        },
    )
    db.session.commit()

    result = engine_gateway.post_json(
        target_url,
        {
            "approved": approved,
            "reviewId": review_id,
            "reviewerNotes": reviewer_notes,
            "responseData": response_data if response_data is not None
            else (review.action_payload or {}).get("data"),
            "reviewedAt": iso(utcnow()),
        },
        api_key=cfg["N8N_API_KEY"],
        timeout=cfg["ENGINE_CALLBACK_TIMEOUT_SECONDS"],
    )
    if not result.ok:
        logger.error("Failed to resume engine execution: %s", result.error,
                     extra={"execution_id": engine_execution_id, "review_id": review_id})

    # The operator decision stands even if the engine already timed out
    _move_execution(engine_execution_id, "running" if approved else "failed")

    return {
        "success": True,
        "message": f"Review {new_status}. Workflow {'resumed' if approved else 'stopped'}.",
        "executionId": engine_execution_id,
        "reviewId": review_id,
        "status": new_status,
        "workflowResumed": result.ok,
    }


def list_pending_for_execution(engine_execution_id: str) -> dict:
    reviews = (
        ReviewRequest.query
        .filter_by(execution_id=engine_execution_id, status="pending")
        .order_by(ReviewRequest.created_at)
        .all()
    )
    return {
        "executionId": engine_execution_id,
        "pendingReviews": len(reviews),
        "reviews": [r.to_dict() for r in reviews],
    }
