"""
Execution Blueprint: progress and completion callbacks from the engine.

Routes:
  POST  /api/v1/engine/execution-update        – progress report (signed)
  GET   /api/v1/engine/execution-update?id=    – execution by internal id
  POST  /api/v1/engine/execution-complete      – terminal completion (signed)
  GET   /api/v1/engine/executions/<engine_id>  – execution by engine id
"""

from flask import Blueprint, jsonify, request

from flowdesk.blueprints import json_body
from flowdesk.core.exceptions import ValidationError
from flowdesk.middleware.webhook_auth import webhook_signature_required
from flowdesk.services import execution_service

execution_bp = Blueprint("execution_bp", __name__, url_prefix="/api/v1/engine")


@execution_bp.route("/execution-update", methods=["POST"])
@webhook_signature_required
def report_progress():
    result = execution_service.report_progress(json_body())
    return jsonify({
        "success": True,
        **result,
        "message": f"Execution {result['status']}",
    }), 200


@execution_bp.route("/execution-update", methods=["GET"])
def get_execution():
    execution_id = request.args.get("id")
    if not execution_id:
        raise ValidationError("Missing execution ID")
    return jsonify(execution_service.get_execution(execution_id)), 200


@execution_bp.route("/execution-complete", methods=["POST"])
@webhook_signature_required
def complete_execution():
    return jsonify(execution_service.complete(json_body())), 200


@execution_bp.route("/executions/<engine_execution_id>", methods=["GET"])
def get_execution_by_engine_id(engine_execution_id):
    return jsonify(execution_service.get_by_engine_id(engine_execution_id)), 200
