"""
PII filter: redacts personal data from payloads sent to a third-party model.

Two passes over any JSON-like value:
    1. Keys whose lower-cased name contains a sensitive fragment
       (``email``, ``password``, ``iban`` ...) have their value replaced.
    2. Remaining strings have emails, phone numbers, card numbers, SSNs and
       IPv4 addresses replaced.

Filtering already-filtered data is a no-op.

Usage:
    from flowdesk.ai.pii import filter_pii
    safe = filter_pii({"customer": {"email": "a@b.com", "note": "call 555-123-4567"}})
"""

import logging
import re

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
MAX_DEPTH_MARKER = "[MAX_DEPTH_EXCEEDED]"
DEFAULT_MAX_DEPTH = 10

# Matched case-insensitively as substrings of the key name
SENSITIVE_KEYS = (
    "email",
    "password",
    "passwd",
    "secret",
    "token",
    "apikey",
    "api_key",
    "ssn",
    "social_security",
    "socialsecurity",
    "drivers_license",
    "driverslicense",
    "passport",
    "national_id",
    "nationalid",
    "tax_id",
    "taxid",
    "ein",
    "credit_card",
    "creditcard",
    "card_number",
    "cardnumber",
    "cvv",
    "cvc",
    "bank_account",
    "bankaccount",
    "routing_number",
    "routingnumber",
    "iban",
    "swift",
    "phone",
    "telephone",
    "mobile",
    "address",
    "street",
    "zipcode",
    "zip_code",
    "postalcode",
    "postal_code",
    "dob",
    "date_of_birth",
    "dateofbirth",
    "birthdate",
    "private_key",
    "privatekey",
    "refresh_token",
    "access_token",
    "bearer",
    "authorization",
    "auth_token",
    "authtoken",
    "session_id",
    "sessionid",
    "cookie",
)

SENSITIVE_PATTERNS = (
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),        # email
    re.compile(r"(\+?1[-.\s]?)?(\(?\d{3}\)?[-.\s]?)?\d{3}[-.\s]?\d{4}"),   # phone
    re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),                           # card
    re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b"),                       # SSN
    re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),                           # IPv4
)


def is_sensitive_key(key) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEYS)


def redact_patterns(value: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        value = pattern.sub(REDACTED, value)
    return value


def filter_pii(data, max_depth: int = DEFAULT_MAX_DEPTH):
    """Return a redacted copy of *data*; the input is not modified.

    Nesting deeper than *max_depth* is replaced by ``[MAX_DEPTH_EXCEEDED]``.
    """
    if max_depth <= 0:
        return MAX_DEPTH_MARKER
    if data is None or isinstance(data, (bool, int, float)):
        return data
    if isinstance(data, str):
        return redact_patterns(data)
    if isinstance(data, (list, tuple)):
        return [filter_pii(item, max_depth - 1) for item in data]
    if isinstance(data, dict):
        filtered = {}
        for key, value in data.items():
            if is_sensitive_key(key):
                filtered[key] = REDACTED
            elif isinstance(value, str):
                filtered[key] = redact_patterns(value)
            else:
                filtered[key] = filter_pii(value, max_depth - 1)
        return filtered
    return data


def contains_sensitive_data(data) -> bool:
    """True if *data* has a sensitive key or a string matching a PII pattern."""
    if data is None:
        return False
    if isinstance(data, str):
        return any(pattern.search(data) for pattern in SENSITIVE_PATTERNS)
    if isinstance(data, (list, tuple)):
        return any(contains_sensitive_data(item) for item in data)
    if isinstance(data, dict):
        for key, value in data.items():
            if is_sensitive_key(key) or contains_sensitive_data(value):
                return True
    return False


def filter_for_model(data, *, context: str = ""):
    """filter_pii() with a warning when anything was redacted."""
    if contains_sensitive_data(data):
        logger.warning("PII detected in model input%s; redacting", f" ({context})" if context else "")
    return filter_pii(data)
