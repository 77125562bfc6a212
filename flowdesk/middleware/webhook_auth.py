"""
Webhook authenticity gate: HMAC-SHA256 signatures on engine callbacks.

Every state-changing request coming from the workflow engine carries an
``X-Webhook-Signature`` header: the hex HMAC-SHA256 of the raw request body
under the shared ``WEBHOOK_SECRET``, optionally prefixed with ``sha256=``.

The decorator reads the raw body before the view parses it, so a request
with a bad signature is rejected with 401 before any database write.

Usage:
    @bp.route("/execution-complete", methods=["POST"])
    @webhook_signature_required
    def execution_complete():
        ...

When no secret is configured the gate lets requests through outside
production (with a warning) and rejects everything in production.
"""

import functools
import hashlib
import hmac
import logging

from flask import current_app, request

from flowdesk.core.exceptions import AuthError

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def _compute(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def generate_signature(body: bytes | str, secret: str) -> str:
    """Return ``sha256=<hex>`` for *body* (used for outgoing calls and tests)."""
    if not secret:
        raise ValueError("WEBHOOK_SECRET is not configured")
    if isinstance(body, str):
        body = body.encode()
    return SIGNATURE_PREFIX + _compute(body, secret)


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of *signature* against the HMAC of *body*.

    Accepts both raw hex and the ``sha256=`` prefixed form.
    """
    if not signature:
        return False
    provided = signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = _compute(body, secret)
    return hmac.compare_digest(expected.encode(), provided.encode())


def check_request_signature() -> None:
    """Validate the current request's signature header; raise AuthError on mismatch."""
    secret = current_app.config.get("WEBHOOK_SECRET") or ""
    header = current_app.config.get("WEBHOOK_SIGNATURE_HEADER", "X-Webhook-Signature")

    if not secret:
        if not current_app.debug and not current_app.testing:
            logger.error("WEBHOOK_SECRET not configured - rejecting webhook %s", request.path)
            raise AuthError("Invalid webhook signature")
        logger.warning("WEBHOOK_SECRET not configured - allowing %s in development", request.path)
        return

    body = request.get_data(cache=True)
    if not verify_signature(body, request.headers.get(header), secret):
        logger.warning(
            "Rejected webhook with invalid signature: %s", request.path,
            extra={"path": request.path, "remote_addr": request.remote_addr},
        )
        raise AuthError("Invalid webhook signature")


def webhook_signature_required(f):
    """Decorator: reject the request with 401 unless its signature is valid."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        check_request_signature()
        return f(*args, **kwargs)

    return decorated
