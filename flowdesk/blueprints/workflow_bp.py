"""
Workflow Blueprint.

Routes:
  GET  /api/v1/workflows/<id>/plan   – compiled step plan
"""

from flask import Blueprint, jsonify

from flowdesk.services.step_plan import get_plan

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")


@workflow_bp.route("/workflows/<workflow_id>/plan", methods=["GET"])
def workflow_plan(workflow_id):
    return jsonify(get_plan(workflow_id).to_dict()), 200
