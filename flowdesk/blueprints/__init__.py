"""
Flowdesk Workflow Coordinator
Blueprint registry.
"""

from flask import request

from flowdesk.core.exceptions import ValidationError


def json_body() -> dict:
    """Parsed JSON object body; an absent or unparsable body reads as ``{}``.

    Raises:
        ValidationError: the body is JSON but not an object.
    """
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
