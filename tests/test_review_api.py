"""
Flowdesk Workflow Coordinator
Tests: human review protocol.

Covers:
    - create: resume address, execution suspension, duplicate suppression,
      terminal executions, validation
    - poll
    - respond: resume call + execution status, best-effort failure handling,
      single decision per review, legacy callback
    - guidance chat, manual resume, pending list

All engine HTTP goes through the ``fake_engine`` session fixture.
"""

from datetime import timedelta

import pytest

from conftest import connection_error
from flowdesk.models import db, utcnow
from flowdesk.models.activity import ActivityLog
from flowdesk.models.execution import Execution
from flowdesk.models.review import ReviewRequest
from flowdesk.services import review_service

CREATE_URL = "/api/v1/engine/review-request"
RESPOND_URL = "/api/v1/engine/review-response"
UPDATE_URL = "/api/v1/engine/execution-update"
RESUME_BASE = "http://engine.test/webhook-waiting"


def _execution(engine_id="e1"):
    db.session.expire_all()
    return Execution.query.filter_by(engine_execution_id=engine_id).first()


def _review(review_id):
    db.session.expire_all()
    return db.session.get(ReviewRequest, review_id)


@pytest.fixture()
def running_execution(signed_post):
    res = signed_post(UPDATE_URL, {"executionId": "e1", "status": "running"})
    assert res.status_code == 200
    return "e1"


@pytest.fixture()
def pending_review(signed_post, running_execution):
    res = signed_post(CREATE_URL, {
        "executionId": "e1", "stepId": "s1", "reviewType": "approval",
        "stepLabel": "Approve invoice", "data": {"amount": 120},
    })
    assert res.status_code == 200
    return res.get_json()["reviewId"]


# ═════════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_create_suspends_execution(self, signed_post, running_execution):
        res = signed_post(CREATE_URL, {"executionId": "e1", "stepId": "s1", "reviewType": "approval"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "pending"
        assert body["message"] == "Review request created successfully"
        assert body["resumeWebhookUrl"].endswith("/webhook-waiting/e1/review-s1")
        assert body["resumeWebhookUrl"] == f"{RESUME_BASE}/e1/review-s1"
        assert "alreadyExists" not in body

        assert _execution().status == "waiting_review"
        review = _review(body["reviewId"])
        assert review.status == "pending"
        assert review.worker_name == "n8n Workflow"
        assert review.timeout_at is not None
        assert ActivityLog.query.filter_by(type="review_requested").count() == 1

    def test_create_without_prior_progress_creates_execution(self, signed_post):
        res = signed_post(CREATE_URL, {"executionId": "e9", "stepId": "s1", "reviewType": "edit"})
        assert res.status_code == 200
        assert _execution("e9").status == "waiting_review"

    def test_racing_create_returns_winner(self, signed_post, running_execution, monkeypatch):
        payload = {"executionId": "e1", "stepId": "s1", "reviewType": "approval"}
        first = signed_post(CREATE_URL, payload).get_json()

        # First lookup misses the winner's row; the fallback lookup after the
        # unique index rejects the insert finds it.
        real_find = review_service._find_pending
        lookups = []

        def late_find(execution_id, step_id):
            lookups.append(step_id)
            return None if len(lookups) == 1 else real_find(execution_id, step_id)

        monkeypatch.setattr(review_service, "_find_pending", late_find)
        res = signed_post(CREATE_URL, payload)

        assert res.status_code == 200
        body = res.get_json()
        assert body["reviewId"] == first["reviewId"]
        assert body["alreadyExists"] is True
        assert len(lookups) == 2
        assert ReviewRequest.query.filter_by(execution_id="e1", step_id="s1").count() == 1
        assert ActivityLog.query.filter_by(type="review_requested").count() == 1

    def test_numeric_step_id_kept(self, signed_post, running_execution):
        res = signed_post(CREATE_URL, {"executionId": "e1", "stepId": 0, "reviewType": "approval"})
        assert res.status_code == 200
        assert res.get_json()["resumeWebhookUrl"] == f"{RESUME_BASE}/e1/review-0"
        assert _review(res.get_json()["reviewId"]).step_id == "0"

    def test_duplicate_create_returns_existing(self, signed_post, running_execution):
        payload = {"executionId": "e1", "stepId": "s1", "reviewType": "approval"}
        first = signed_post(CREATE_URL, payload).get_json()
        second = signed_post(CREATE_URL, payload).get_json()

        assert second["reviewId"] == first["reviewId"]
        assert second["alreadyExists"] is True
        assert ReviewRequest.query.count() == 1
        assert ActivityLog.query.filter_by(type="review_requested").count() == 1

    def test_other_step_gets_its_own_review(self, signed_post, running_execution):
        a = signed_post(CREATE_URL, {"executionId": "e1", "stepId": "s1", "reviewType": "approval"})
        b = signed_post(CREATE_URL, {"executionId": "e1", "stepId": "s2", "reviewType": "approval"})
        assert a.get_json()["reviewId"] != b.get_json()["reviewId"]
        assert ReviewRequest.query.count() == 2

    def test_missing_step_uses_default(self, signed_post, running_execution):
        body = signed_post(CREATE_URL, {"executionId": "e1", "reviewType": "decision"}).get_json()
        assert body["resumeWebhookUrl"] == f"{RESUME_BASE}/e1/review-default"

    def test_required_fields(self, signed_post):
        res = signed_post(CREATE_URL, {"executionId": "e1"})
        assert res.status_code == 400
        assert res.get_json()["error"] == "Missing required fields: executionId, reviewType"

    def test_unknown_review_type(self, signed_post):
        res = signed_post(CREATE_URL, {"executionId": "e1", "reviewType": "vote"})
        assert res.status_code == 400
        assert ReviewRequest.query.count() == 0

    def test_terminal_execution_rejected(self, signed_post):
        signed_post(UPDATE_URL, {"executionId": "e1", "status": "completed"})
        res = signed_post(CREATE_URL, {"executionId": "e1", "stepId": "s1", "reviewType": "approval"})
        assert res.status_code == 409
        assert ReviewRequest.query.count() == 0
        assert _execution().status == "completed"

    def test_custom_timeout(self, signed_post, running_execution):
        before = utcnow().replace(tzinfo=None)
        body = signed_post(CREATE_URL, {
            "executionId": "e1", "stepId": "s1", "reviewType": "approval", "timeoutHours": 2,
        }).get_json()
        timeout_at = _review(body["reviewId"]).timeout_at.replace(tzinfo=None)
        assert before + timedelta(hours=2) <= timeout_at <= before + timedelta(hours=2, minutes=1)

    def test_invalid_timeout(self, signed_post):
        res = signed_post(CREATE_URL, {
            "executionId": "e1", "reviewType": "approval", "timeoutHours": "soon",
        })
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# POLL
# ═════════════════════════════════════════════════════════════════════════════


class TestPoll:
    def test_poll_returns_review(self, client, pending_review):
        res = client.get(f"{CREATE_URL}?id={pending_review}")
        assert res.status_code == 200
        body = res.get_json()
        assert body["id"] == pending_review
        assert body["status"] == "pending"
        assert body["actionType"] == "approval"
        assert body["actionPayload"]["stepLabel"] == "Approve invoice"
        assert body["chatHistory"] == []
        assert body["createdAt"]

    def test_poll_requires_id(self, client):
        assert client.get(CREATE_URL).status_code == 400

    def test_poll_unknown_id(self, client):
        assert client.get(f"{CREATE_URL}?id=missing").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# RESPOND
# ═════════════════════════════════════════════════════════════════════════════


class TestRespond:
    def test_approval_resumes_engine(self, client, pending_review, fake_engine):
        fake_engine.respond_with(200)
        res = client.post(RESPOND_URL, json={
            "reviewId": pending_review, "status": "approved",
            "feedback": "Looks right", "reviewerId": "u-7",
        })
        assert res.status_code == 200
        body = res.get_json()
        assert body["success"] is True
        assert body["status"] == "approved"
        assert body["workflowResumed"] is True

        assert _execution().status == "running"
        review = _review(pending_review)
        assert review.status == "approved"
        assert review.reviewer_id == "u-7"
        assert review.action_payload["feedback"] == "Looks right"
        assert review.action_payload["reviewedAt"]

        call = fake_engine.calls[0]
        assert call["url"] == f"{RESUME_BASE}/e1/review-s1"
        assert call["headers"]["X-N8N-API-KEY"] == "test-engine-key"
        assert call["json"]["approved"] is True
        assert call["json"]["reviewId"] == pending_review
        assert call["json"]["responseData"] == {"amount": 120}

    def test_rejection_fails_execution(self, client, pending_review, fake_engine):
        res = client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "rejected"})
        assert res.get_json()["workflowResumed"] is True
        assert fake_engine.calls[0]["json"]["approved"] is False
        assert _execution().status == "failed"

    def test_edit_counts_as_approval(self, client, pending_review, fake_engine):
        client.post(RESPOND_URL, json={
            "reviewId": pending_review, "status": "edited", "editedData": {"amount": 99},
        })
        payload = fake_engine.calls[0]["json"]
        assert payload["approved"] is True
        assert payload["editedData"] == {"amount": 99}
        assert payload["responseData"] == {"amount": 99}
        assert _execution().status == "running"

    def test_unreachable_engine_still_resolves(self, client, pending_review, fake_engine):
        fake_engine.respond_with(connection_error())
        res = client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "approved"})
        assert res.status_code == 200
        assert res.get_json()["workflowResumed"] is False
        assert _review(pending_review).status == "approved"
        assert _execution().status == "waiting_review"

    def test_resume_call_bounded_by_callback_timeout(self, app, client, pending_review, fake_engine,
                                                     monkeypatch):
        monkeypatch.setitem(app.config, "ENGINE_CALLBACK_TIMEOUT_SECONDS", 3)
        client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "approved"})
        assert fake_engine.calls[0]["timeout"] == 3
        assert _review(pending_review).status == "approved"

    def test_engine_error_status_not_resumed(self, client, pending_review, fake_engine):
        fake_engine.respond_with(500)
        res = client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "approved"})
        assert res.get_json()["workflowResumed"] is False
        assert _execution().status == "waiting_review"

    def test_second_decision_conflicts(self, client, pending_review, fake_engine):
        client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "approved"})
        res = client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "rejected"})
        assert res.status_code == 409
        assert _review(pending_review).status == "approved"
        assert len(fake_engine.calls) == 1
        assert ActivityLog.query.filter_by(type="review_completed").count() == 1

    def test_legacy_callback_is_called(self, signed_post, client, running_execution, fake_engine):
        review_id = signed_post(CREATE_URL, {
            "executionId": "e1", "stepId": "s1", "reviewType": "approval",
            "callbackUrl": "http://legacy.test/callback",
        }).get_json()["reviewId"]

        client.post(RESPOND_URL, json={"reviewId": review_id, "status": "approved"})
        urls = [c["url"] for c in fake_engine.calls]
        assert urls == [f"{RESUME_BASE}/e1/review-s1", "http://legacy.test/callback"]

    def test_legacy_callback_failure_is_swallowed(self, signed_post, client, running_execution,
                                                  fake_engine):
        review_id = signed_post(CREATE_URL, {
            "executionId": "e1", "stepId": "s1", "reviewType": "approval",
            "callbackUrl": "http://legacy.test/callback",
        }).get_json()["reviewId"]
        fake_engine.respond_with(200, connection_error())

        res = client.post(RESPOND_URL, json={"reviewId": review_id, "status": "approved"})
        assert res.status_code == 200
        assert res.get_json()["workflowResumed"] is True

    def test_unknown_review(self, client, fake_engine):
        res = client.post(RESPOND_URL, json={"reviewId": "missing", "status": "approved"})
        assert res.status_code == 404
        assert fake_engine.calls == []

    def test_invalid_status(self, client, pending_review):
        res = client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "expired"})
        assert res.status_code == 400
        assert _review(pending_review).status == "pending"

    def test_required_fields(self, client):
        assert client.post(RESPOND_URL, json={"status": "approved"}).status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# CHAT / MANUAL RESUME
# ═════════════════════════════════════════════════════════════════════════════


class TestChat:
    def test_append_message(self, client, pending_review):
        url = f"/api/v1/engine/reviews/{pending_review}/chat"
        client.post(url, json={"content": "Which vendor?"})
        res = client.post(url, json={"role": "assistant", "content": "ACME Corp"})
        assert res.status_code == 200
        history = res.get_json()["chatHistory"]
        assert [m["role"] for m in history] == ["user", "assistant"]
        assert history[1]["content"] == "ACME Corp"
        assert history[0]["timestamp"]
        assert len(_review(pending_review).chat_history) == 2

    def test_resolved_review_conflicts(self, client, pending_review, fake_engine):
        client.post(RESPOND_URL, json={"reviewId": pending_review, "status": "approved"})
        res = client.post(f"/api/v1/engine/reviews/{pending_review}/chat", json={"content": "hi"})
        assert res.status_code == 409

    def test_empty_content(self, client, pending_review):
        res = client.post(f"/api/v1/engine/reviews/{pending_review}/chat", json={"content": " "})
        assert res.status_code == 400


class TestManualResume:
    def test_approve_resumes(self, client, pending_review, fake_engine):
        res = client.post("/api/v1/engine/resume/e1", json={
            "reviewId": pending_review, "approved": True, "reviewerNotes": "ok",
        })
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "approved"
        assert body["message"] == "Review approved. Workflow resumed."
        assert body["workflowResumed"] is True
        assert fake_engine.calls[0]["url"] == f"{RESUME_BASE}/e1/review-s1"
        assert _execution().status == "running"
        assert ActivityLog.query.filter_by(type="review_approved").count() == 1

    def test_reject_stops_even_if_engine_fails(self, client, pending_review, fake_engine):
        fake_engine.respond_with(404)
        res = client.post("/api/v1/engine/resume/e1", json={"reviewId": pending_review, "approved": False})
        body = res.get_json()
        assert body["status"] == "rejected"
        assert body["workflowResumed"] is False
        assert _execution().status == "failed"
        assert _review(pending_review).status == "rejected"

    def test_requires_approved_flag(self, client, pending_review):
        res = client.post("/api/v1/engine/resume/e1", json={"reviewId": pending_review})
        assert res.status_code == 400

    def test_review_of_other_execution(self, client, pending_review):
        res = client.post("/api/v1/engine/resume/e2", json={"reviewId": pending_review, "approved": True})
        assert res.status_code == 400

    def test_list_pending(self, client, pending_review):
        res = client.get("/api/v1/engine/resume/e1")
        body = res.get_json()
        assert body["executionId"] == "e1"
        assert body["pendingReviews"] == 1
        assert body["reviews"][0]["id"] == pending_review
