"""
Workflow engine (n8n) integration gateway.

All outbound HTTP calls to the engine go through this class: the resume
call that unblocks a suspended execution, and the legacy callback some
older workflows still register. Direct `requests` calls in services or
blueprints are not used.

  - One attempt per call with a bounded timeout; the engine polls the
    review endpoint as its own fallback, so there is no retry here.
  - Structured GatewayResult returned to the service; never raises.
  - ``fire_and_forget`` runs a call on a daemon thread with its outcome
    logged, so a hung engine cannot hold the request that triggered it.

Testability: pass a mock `session` to EngineGateway() in tests, or
patch.object the module-level ``engine_gateway`` singleton.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10
_API_SUFFIX = "/api/v1"


def engine_base_url(api_url: str) -> str:
    """Strip the REST suffix from the engine API URL (``.../api/v1`` → ``...``)."""
    base = (api_url or "").rstrip("/")
    if base.endswith(_API_SUFFIX):
        base = base[: -len(_API_SUFFIX)]
    return base


def build_resume_url(api_url: str, execution_id: str, step_id: str) -> str:
    """Deterministic resume address for a review wait node.

    Format: ``{engineBase}/webhook-waiting/{executionId}/review-{stepId}``
    """
    return f"{engine_base_url(api_url)}/webhook-waiting/{execution_id}/review-{step_id}"


class GatewayResult:
    """Outcome of one call to the engine; never raised, always returned.

    ``ok`` is True only for a 2xx answer. ``status_code`` stays None when the
    engine could not be reached, and ``error`` then carries the network
    failure text. ``data`` is the decoded JSON body when there was one.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms

    def to_log_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    def __repr__(self):
        return f"<GatewayResult ok={self.ok} status={self.status_code}>"


class EngineGateway:
    """HTTP client for the workflow engine's resume / callback endpoints.

    Usage:
        from flowdesk.integrations.engine_gateway import engine_gateway
        result = engine_gateway.post_json(url, payload, api_key=key, timeout=10)
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def post_json(
        self,
        url: str,
        payload: dict,
        *,
        api_key: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> GatewayResult:
        """POST *payload* as JSON to *url*. Always returns, never raises."""
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-N8N-API-KEY"] = api_key

        t0 = time.perf_counter()
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            duration_ms = int((time.perf_counter() - t0) * 1000)
            logger.warning("Engine call to %s failed: %s", url, exc)
            return GatewayResult(False, None, None, str(exc), duration_ms)

        duration_ms = int((time.perf_counter() - t0) * 1000)
        data: Any = None
        try:
            data = resp.json()
        except ValueError:
            data = None

        if 200 <= resp.status_code < 300:
            return GatewayResult(True, resp.status_code, data, None, duration_ms)

        error = f"HTTP {resp.status_code}: {(resp.text or '')[:300]}"
        logger.warning("Engine call to %s returned %s", url, resp.status_code)
        return GatewayResult(False, resp.status_code, data, error, duration_ms)

    def fire_and_forget(
        self,
        url: str,
        payload: dict,
        *,
        label: str,
        api_key: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        inline: bool = False,
    ) -> threading.Thread | None:
        """Send a best-effort call whose outcome is only logged.

        Runs on a daemon thread unless *inline* is set (tests). Returns the
        thread, or None when run inline.
        """

        def _run():
            result = self.post_json(url, payload, api_key=api_key, timeout=timeout)
            if result.ok:
                logger.info("%s delivered to %s (%dms)", label, url, result.duration_ms)
            else:
                logger.warning("%s to %s failed: %s", label, url, result.error)

        if inline:
            _run()
            return None

        t = threading.Thread(target=_run, name=f"engine-callback-{label}", daemon=True)
        t.start()
        return t


# Module-level singleton
engine_gateway = EngineGateway()
