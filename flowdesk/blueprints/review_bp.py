"""
Review Blueprints: human review protocol.

Two blueprints so the engine-facing routes can be rate limited on their own.

review_request_bp (rate limited):
  POST  /api/v1/engine/review-request          – open a review (signed)
  GET   /api/v1/engine/review-request?id=      – poll a review

review_response_bp (internal UI origin):
  POST  /api/v1/engine/review-response         – record a decision
  POST  /api/v1/engine/reviews/<id>/chat       – append a guidance message
  POST  /api/v1/engine/resume/<engine_id>      – operator approve/reject + resume
  GET   /api/v1/engine/resume/<engine_id>      – pending reviews of an execution
"""

from flask import Blueprint, jsonify, request

from flowdesk.blueprints import json_body
from flowdesk.middleware.webhook_auth import webhook_signature_required
from flowdesk.services import review_service

review_request_bp = Blueprint("review_request_bp", __name__, url_prefix="/api/v1/engine")
review_response_bp = Blueprint("review_response_bp", __name__, url_prefix="/api/v1/engine")


# ═════════════════════════════════════════════════════════════════════════════
# ENGINE-FACING
# ═════════════════════════════════════════════════════════════════════════════

@review_request_bp.route("/review-request", methods=["POST"])
@webhook_signature_required
def create_review():
    return jsonify(review_service.create_review(json_body())), 200


@review_request_bp.route("/review-request", methods=["GET"])
def poll_review():
    return jsonify(review_service.poll(request.args.get("id"))), 200


# ═════════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═════════════════════════════════════════════════════════════════════════════

@review_response_bp.route("/review-response", methods=["POST"])
def respond_review():
    return jsonify(review_service.respond(json_body())), 200


@review_response_bp.route("/reviews/<review_id>/chat", methods=["POST"])
def chat(review_id):
    return jsonify(review_service.append_chat(review_id, json_body())), 200


@review_response_bp.route("/resume/<engine_execution_id>", methods=["POST"])
def resume(engine_execution_id):
    return jsonify(review_service.manual_resume(engine_execution_id, json_body())), 200


@review_response_bp.route("/resume/<engine_execution_id>", methods=["GET"])
def pending_for_execution(engine_execution_id):
    return jsonify(review_service.list_pending_for_execution(engine_execution_id)), 200
