"""
AI Action Blueprint: one AI-executed workflow step.

Routes:
  POST  /api/v1/engine/ai-action   – run a step; 200 with the success or
                                     guidance body, 400/429/503/500 with a
                                     classified error body on failure

The model call retries internally, so callers need a generous timeout.
"""

from flask import Blueprint, jsonify

from flowdesk.blueprints import json_body
from flowdesk.services.ai_action_service import run_ai_action

ai_action_bp = Blueprint("ai_action_bp", __name__, url_prefix="/api/v1/engine")


@ai_action_bp.route("/ai-action", methods=["POST"])
def ai_action():
    return jsonify(run_ai_action(json_body())), 200
