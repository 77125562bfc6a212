"""
Cleanup Blueprint: stale review reaper.

Routes:
  POST  /api/v1/engine/cleanup   – expire overdue reviews (signed, cron)
  GET   /api/v1/engine/cleanup   – review counts and reviews expiring in 24h
"""

from flask import Blueprint, jsonify

from flowdesk.middleware.webhook_auth import webhook_signature_required
from flowdesk.services import cleanup_service

cleanup_bp = Blueprint("cleanup_bp", __name__, url_prefix="/api/v1/engine")


@cleanup_bp.route("/cleanup", methods=["POST"])
@webhook_signature_required
def run_cleanup():
    return jsonify(cleanup_service.run_cleanup()), 200


@cleanup_bp.route("/cleanup", methods=["GET"])
def cleanup_status():
    return jsonify(cleanup_service.cleanup_status()), 200
