"""
Platform-wide exception hierarchy.

Services raise these types; the application factory registers one JSON
handler per type, so every blueprint gets the same HTTP status codes.

Two families live here:

  * Request/store errors (``NotFoundError``, ``ValidationError``,
    ``ConflictError``, ``AuthError``) raised while handling an inbound call.
  * Upstream errors (``UpstreamError`` subclasses) produced when a call to
    the generative model fails. They carry a machine ``error_type`` and a
    ``retryable`` flag so the calling engine can decide whether to re-invoke.

Usage:
    from flowdesk.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Execution", resource_id="e1")
    raise ValidationError("Missing required fields: executionId, status")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Execution", "ReviewRequest").
        resource_id: The id that was looked up. Included in logs, not in HTTP response.
    """

    status_code = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)

    @property
    def public_message(self) -> str:
        return f"{self.resource} not found"


class ValidationError(Exception):
    """Raised when a required field is missing or malformed. Maps to HTTP 400.

    Never retried: the same request will fail the same way.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    status_code = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write conflicts with the stored state. Maps to HTTP 409.

    Typical case: a decision submitted for a review that is no longer pending.
    """

    status_code = 409

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(ConflictError):
    """Raised when a status write would move an execution backward.

    Args:
        entity: Entity name ("Execution").
        entity_id: Identifier used for the lookup.
        current: Stored status.
        requested: Status the caller tried to write.
    """

    def __init__(self, entity: str, entity_id: str, current: str, requested: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current
        self.requested_status = requested
        super().__init__(
            f"Cannot move {entity} {entity_id} from '{current}' to '{requested}'",
            details={"currentStatus": current, "requestedStatus": requested},
        )


class AuthError(Exception):
    """Raised when an inbound webhook carries a missing or invalid signature. HTTP 401."""

    status_code = 401


# ── Upstream (generative model) errors ────────────────────────────────────────


class UpstreamError(Exception):
    """Base class for classified failures of an outbound model call.

    Attributes:
        error_type: Machine-readable classification returned to the caller.
        retryable: Whether the caller may re-invoke the step later.
        status_code: HTTP status used when the error reaches the client.
        details: Free-form context (step label, upstream message).
    """

    error_type = "unknown"
    retryable = False
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, details: str | None = None) -> None:
        self.details = details
        super().__init__(message or self.default_message)

    def to_dict(self) -> dict:
        body = {
            "error": str(self),
            "errorType": self.error_type,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class RateLimitError(UpstreamError):
    error_type = "rate_limit"
    retryable = True
    status_code = 429
    default_message = "AI service rate limited. Please try again later."


class ConfigurationError(UpstreamError):
    """Missing credentials or provider setup; requires operator action."""

    error_type = "configuration"
    retryable = False
    status_code = 503
    default_message = "AI service not properly configured"


class TransientError(UpstreamError):
    error_type = "transient"
    retryable = True
    status_code = 503
    default_message = "Temporary service issue. The system will retry automatically."


class UpstreamValidationError(UpstreamError):
    """The model API rejected the request itself (4xx other than 429)."""

    error_type = "validation"
    retryable = False
    status_code = 400
    default_message = "Invalid request to AI service"


class PermanentError(UpstreamError):
    error_type = "permanent"
    retryable = False
    status_code = 500
    default_message = "AI service failed permanently"


class UnknownError(UpstreamError):
    error_type = "unknown"
    retryable = False
    status_code = 500
