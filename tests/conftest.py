"""
Shared pytest fixtures for the Flowdesk test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - signed_post: POST helper that signs the body like the engine does
    - fake_model: scripted model provider installed on the app's gateway
    - fake_engine: requests-like session installed on the engine gateway
"""

import json

import pytest
import requests

from flowdesk import create_app
from flowdesk.ai.gateway import EXTENSION_KEY, ModelProvider, ProviderCallError
from flowdesk.integrations.engine_gateway import engine_gateway
from flowdesk.middleware.webhook_auth import generate_signature
from flowdesk.models import db as _db
from flowdesk.services.step_plan import CACHE_EXTENSION_KEY

WEBHOOK_SECRET = "test-webhook-secret"
SIGNATURE_HEADER = "X-Webhook-Signature"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables, drop cached plans."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        app.extensions[CACHE_EXTENSION_KEY].clear()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Signed webhook calls ─────────────────────────────────────────────────


def sign(body: str) -> str:
    return generate_signature(body, WEBHOOK_SECRET)


@pytest.fixture()
def signed_post(client):
    """POST *payload* with a valid engine signature; returns the response."""

    def _post(url, payload=None, signature=None):
        body = json.dumps(payload if payload is not None else {})
        headers = {SIGNATURE_HEADER: signature if signature is not None else sign(body)}
        return client.post(url, data=body, headers=headers, content_type="application/json")

    return _post


# ── Model provider fake ──────────────────────────────────────────────────


class FakeModelProvider(ModelProvider):
    """Replays scripted replies; a ProviderCallError entry is raised instead."""

    name = "fake"

    def __init__(self):
        self.replies = []
        self.calls = []

    def script(self, *replies):
        self.replies.extend(replies)
        return self

    def generate(self, system_prompt, user_prompt, **kwargs):
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if not self.replies:
            raise AssertionError("FakeModelProvider ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


def http_error(status):
    return ProviderCallError(f"Gemini API error: {status}", status_code=status)


def network_error():
    return ProviderCallError("connection refused", network=True)


@pytest.fixture()
def fake_model(app, monkeypatch):
    """Install a FakeModelProvider; backoff sleeps are recorded, not slept."""
    gateway = app.extensions[EXTENSION_KEY]
    provider = FakeModelProvider()
    provider.sleeps = []
    monkeypatch.setattr(gateway, "provider", provider)
    monkeypatch.setattr(gateway.policy, "sleep", provider.sleeps.append)
    return provider


# ── Engine HTTP fake ─────────────────────────────────────────────────────


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = json.dumps(self._payload)

    def json(self):
        return self._payload


class FakeEngineSession:
    """Stands in for requests.Session on the engine gateway."""

    def __init__(self):
        self.outcomes = []
        self.calls = []

    def respond_with(self, *outcomes):
        """Each outcome is a status code or an exception to raise."""
        self.outcomes.extend(outcomes)
        return self

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout})
        outcome = self.outcomes.pop(0) if self.outcomes else 200
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


@pytest.fixture()
def fake_engine(monkeypatch):
    fake = FakeEngineSession()
    monkeypatch.setattr(engine_gateway, "_session", fake)
    return fake


def connection_error():
    return requests.ConnectionError("engine unreachable")
