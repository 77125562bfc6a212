"""
Flowdesk Workflow Coordinator
Tests: AI action endpoint.

Covers:
    - success and guidance outcomes
    - retry of 5xx / 429 / network failures with backoff (no real sleeps)
    - classified error bodies (errorType, retryable, status)
    - prompt content: blueprint lists, guidance context, PII redaction
    - activity trail per call

The provider is replaced by ``FakeModelProvider`` via the ``fake_model``
fixture; nothing reaches Google.
"""

import json

from conftest import http_error, network_error
from flowdesk.ai.gateway import EXTENSION_KEY, GeminiProvider, LocalStubProvider, ModelGateway
from flowdesk.ai.step_executor import Blueprint, StepRequest, parse_model_reply
from flowdesk.models.activity import ActivityLog

URL = "/api/v1/engine/ai-action"


def _step(**overrides):
    body = {
        "workflowId": "wf-1",
        "stepId": "s3",
        "stepLabel": "Classify invoice",
        "executionId": "e1",
        "input": {"amount": 120, "vendor": "ACME"},
    }
    body.update(overrides)
    return body


def _activity_types():
    return [a.type for a in ActivityLog.query.order_by(ActivityLog.id).all()]


# ═════════════════════════════════════════════════════════════════════════════
# OUTCOMES
# ═════════════════════════════════════════════════════════════════════════════


class TestOutcomes:
    def test_success(self, client, fake_model):
        fake_model.script({
            "result": {"category": "utilities"},
            "actions": ["classified"],
            "message": "Classified as utilities",
        })
        res = client.post(URL, json=_step())
        assert res.status_code == 200
        body = res.get_json()
        assert body == {
            "success": True,
            "result": {"category": "utilities"},
            "actions": ["classified"],
            "message": "Classified as utilities",
        }
        assert _activity_types() == ["workflow_step_execution", "workflow_step_complete"]

    def test_guidance_question_returned_verbatim(self, client, fake_model):
        question = "Which cost center should this invoice go to?"
        fake_model.script({
            "needsGuidance": True,
            "guidanceQuestion": question,
            "partialResult": {"vendor": "ACME"},
        })
        res = client.post(URL, json=_step())
        assert res.status_code == 200
        body = res.get_json()
        assert body["success"] is False
        assert body["needsGuidance"] is True
        assert body["guidanceQuestion"] == question
        assert body["partialResult"] == {"vendor": "ACME"}
        assert body["message"] == "AI agent requires guidance to proceed"
        assert _activity_types()[-1] == "workflow_step_guidance"

    def test_non_json_reply_is_wrapped(self, client, fake_model):
        fake_model.script("The invoice looks like a utility bill.")
        body = client.post(URL, json=_step()).get_json()
        assert body["success"] is True
        assert body["result"] == "The invoice looks like a utility bill."
        assert body["actions"] == ["processed"]
        assert body["message"] == "Action completed"

    def test_fenced_json_reply(self, client, fake_model):
        fake_model.script('```json\n{"result": 42, "actions": [], "message": "done"}\n```')
        body = client.post(URL, json=_step()).get_json()
        assert body["result"] == 42
        assert body["message"] == "done"

    def test_empty_reply_is_permanent_error(self, client, fake_model):
        fake_model.script("")
        res = client.post(URL, json=_step())
        assert res.status_code == 500
        assert res.get_json()["errorType"] == "permanent"
        assert res.get_json()["retryable"] is False

    def test_missing_fields(self, client, fake_model):
        res = client.post(URL, json={"workflowId": "wf-1"})
        assert res.status_code == 400
        assert res.get_json()["error"] == "Missing required fields: workflowId and stepId"
        assert fake_model.calls == []
        assert ActivityLog.query.count() == 0

    def test_numeric_step_id_accepted(self, client, fake_model):
        fake_model.script({"result": "ok", "actions": [], "message": "done"})
        res = client.post(URL, json=_step(stepId=0))
        assert res.status_code == 200
        assert len(fake_model.calls) == 1


# ═════════════════════════════════════════════════════════════════════════════
# RETRY / CLASSIFICATION
# ═════════════════════════════════════════════════════════════════════════════


class TestRetry:
    def test_transient_failure_then_success(self, client, fake_model):
        fake_model.script(http_error(503), {"result": "ok", "actions": [], "message": "done"})
        res = client.post(URL, json=_step())
        assert res.status_code == 200
        assert res.get_json()["result"] == "ok"
        assert len(fake_model.calls) == 2
        assert len(fake_model.sleeps) == 1
        assert 1.0 <= fake_model.sleeps[0] <= 1.3

    def test_network_failure_is_retried(self, client, fake_model):
        fake_model.script(network_error(), network_error(), {"result": 1})
        res = client.post(URL, json=_step())
        assert res.status_code == 200
        assert len(fake_model.calls) == 3
        assert len(fake_model.sleeps) == 2
        assert fake_model.sleeps[1] >= 2.0

    def test_client_error_not_retried(self, client, fake_model):
        fake_model.script(http_error(400))
        res = client.post(URL, json=_step())
        assert res.status_code == 400
        body = res.get_json()
        assert body["errorType"] == "validation"
        assert body["retryable"] is False
        assert body["details"] == "Step: Classify invoice"
        assert len(fake_model.calls) == 1
        assert fake_model.sleeps == []

    def test_rate_limit_exhausts_retries(self, client, fake_model):
        fake_model.script(*[http_error(429) for _ in range(4)])
        res = client.post(URL, json=_step())
        assert res.status_code == 429
        body = res.get_json()
        assert body["errorType"] == "rate_limit"
        assert body["retryable"] is True
        assert len(fake_model.calls) == 4
        assert len(fake_model.sleeps) == 3

    def test_server_errors_exhausted_are_transient(self, client, fake_model):
        fake_model.script(*[http_error(502) for _ in range(4)])
        res = client.post(URL, json=_step())
        assert res.status_code == 503
        assert res.get_json()["errorType"] == "transient"
        assert res.get_json()["retryable"] is True

    def test_error_is_logged(self, client, fake_model):
        fake_model.script(http_error(400))
        client.post(URL, json=_step())
        assert _activity_types() == ["workflow_step_execution", "workflow_step_error"]
        entry = ActivityLog.query.filter_by(type="workflow_step_error").one()
        assert entry.data["errorType"] == "validation"
        assert entry.data["retryable"] is False
        assert entry.execution_id == "e1"

    def test_missing_api_key_is_configuration_error(self, app, client, monkeypatch):
        gateway = app.extensions[EXTENSION_KEY]
        monkeypatch.setattr(gateway, "provider", GeminiProvider(api_key=""))
        res = client.post(URL, json=_step())
        assert res.status_code == 503
        body = res.get_json()
        assert body["errorType"] == "configuration"
        assert body["retryable"] is False
        assert body["details"] == "GEMINI_API_KEY not configured"


# ═════════════════════════════════════════════════════════════════════════════
# PROMPTS
# ═════════════════════════════════════════════════════════════════════════════


class TestPrompts:
    def test_blueprint_string_is_parsed(self, client, fake_model):
        fake_model.script({"result": 1})
        blueprint = json.dumps({"greenList": ["Read invoices"], "redList": ["Send payments"]})
        client.post(URL, json=_step(blueprint=blueprint))
        system = fake_model.calls[0]["system"]
        assert 'workflow step: "Classify invoice"' in system
        assert "- Read invoices" in system
        assert "- Send payments" in system

    def test_invalid_blueprint_uses_defaults(self, client, fake_model):
        fake_model.script({"result": 1})
        res = client.post(URL, json=_step(blueprint="{not json"))
        assert res.status_code == 200
        system = fake_model.calls[0]["system"]
        assert "- General task execution" in system
        assert "- No specific restrictions" in system

    def test_guidance_context_included(self, client, fake_model):
        fake_model.script({"result": 1})
        client.post(URL, json=_step(guidanceContext="Use cost center 4100"))
        system = fake_model.calls[0]["system"]
        assert "## Previous Guidance from Manager:" in system
        assert "Use cost center 4100" in system

    def test_no_guidance_section_without_context(self, client, fake_model):
        fake_model.script({"result": 1})
        client.post(URL, json=_step())
        assert "Previous Guidance" not in fake_model.calls[0]["system"]

    def test_input_is_redacted_before_model_call(self, client, fake_model):
        fake_model.script({"result": 1})
        client.post(URL, json=_step(input=json.dumps({
            "vendor": "ACME",
            "contact_email": "billing@acme.example",
            "note": "reach me at jane@acme.example",
        })))
        user = fake_model.calls[0]["user"]
        assert "ACME" in user
        assert "billing@acme.example" not in user
        assert "jane@acme.example" not in user
        assert "[REDACTED]" in user


# ═════════════════════════════════════════════════════════════════════════════
# UNITS
# ═════════════════════════════════════════════════════════════════════════════


class TestStepRequest:
    def test_non_object_input_becomes_empty(self):
        step = StepRequest.from_payload({"workflowId": "wf", "stepId": "s", "input": "42"})
        assert step.input == {}

    def test_blueprint_object_accepted(self):
        bp = Blueprint.parse({"greenList": ["a", "", None], "redList": "nope"})
        assert bp.green_list == ["a"]
        assert bp.red_list == []

    def test_parse_reply_non_object_json(self):
        outcome = parse_model_reply("[1, 2]")
        assert outcome.to_dict()["result"] == [1, 2]


class TestGatewayConfig:
    def test_local_provider_selected(self):
        gateway = ModelGateway.from_config({"AI_PROVIDER": "local"})
        assert isinstance(gateway.provider, LocalStubProvider)

    def test_gemini_is_default(self):
        gateway = ModelGateway.from_config({"GEMINI_API_KEY": "k", "AI_MAX_RETRIES": 5})
        assert isinstance(gateway.provider, GeminiProvider)
        assert gateway.policy.max_retries == 5

    def test_local_stub_returns_json(self, client):
        res = client.post(URL, json=_step())
        assert res.status_code == 200
        assert res.get_json()["actions"] == ["processed"]
