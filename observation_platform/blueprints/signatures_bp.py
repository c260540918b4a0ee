"""
Signatures & approval workflow blueprint.

Routes:
  POST   /sessions/<id>/signatures              – sign as teacher / observer
  GET    /sessions/<id>/signatures              – list signatures
  GET    /sessions/<id>/signature-requirements  – required vs completed roles
  POST   /signatures/<id>/verify                – record a verification
  DELETE /signatures/<id>                       – administrator removal
  GET    /signatures/statistics                 – counts by role / month / method
  GET    /sessions/<id>/approval-workflow       – derived approval steps
  POST   /approvals                             – approve / reject / request_changes / delegate
  GET    /approvals/pending                     – sessions waiting on my role
  POST   /sessions/<id>/delegate                – record a delegation
  GET    /sessions/<id>/approval-history        – approval events, latest first
"""

import logging

from flask import Blueprint, jsonify, request

from observation_platform.blueprints import current_actor, json_body, register_error_handlers
from observation_platform.services import approval_workflow, signature_service
from observation_platform.utils.errors import E, api_error

logger = logging.getLogger(__name__)

signatures_bp = Blueprint("signatures", __name__, url_prefix="/api/v1")
register_error_handlers(signatures_bp)


# ── Signatures ───────────────────────────────────────────────────────────────


@signatures_bp.route("/sessions/<session_id>/signatures", methods=["POST"])
def create_signature(session_id):
    """Body: { role?, signature_data?, metadata? }"""
    actor = current_actor()
    data = json_body()
    data.setdefault("ip_address", request.headers.get("X-Forwarded-For", request.remote_addr))
    data.setdefault("user_agent", request.headers.get("User-Agent"))
    return jsonify(signature_service.create_signature(session_id, data, actor)), 201


@signatures_bp.route("/sessions/<session_id>/signatures", methods=["GET"])
def list_signatures(session_id):
    current_actor()
    return jsonify(signature_service.list_signatures(session_id))


@signatures_bp.route("/sessions/<session_id>/signature-requirements", methods=["GET"])
def signature_requirements(session_id):
    current_actor()
    return jsonify(signature_service.get_signature_requirements(session_id))


@signatures_bp.route("/signatures/statistics", methods=["GET"])
def signature_statistics():
    current_actor()
    return jsonify(signature_service.get_signature_statistics())


@signatures_bp.route("/signatures/<int:signature_id>/verify", methods=["POST"])
def verify_signature(signature_id):
    """Body: { verification_method?, verification_result?, verifier_comments? }"""
    actor = current_actor()
    return jsonify(signature_service.verify_signature(signature_id, json_body(), actor))


@signatures_bp.route("/signatures/<int:signature_id>", methods=["DELETE"])
def remove_signature(signature_id):
    signature_service.remove_signature(signature_id, current_actor())
    return "", 204


# ── Approval workflow ────────────────────────────────────────────────────────


@signatures_bp.route("/sessions/<session_id>/approval-workflow", methods=["GET"])
def approval_workflow_state(session_id):
    current_actor()
    return jsonify(approval_workflow.evaluate(session_id))


@signatures_bp.route("/approvals", methods=["POST"])
def process_approval():
    """Body: { session_id, action, comments?, signature_data?, delegate_to_user_id? }"""
    actor = current_actor()
    data = json_body()
    missing = [f for f in ("session_id", "action") if not data.get(f)]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"Missing required fields: {', '.join(missing)}")
    return jsonify(approval_workflow.process_approval(data, actor))


@signatures_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    return jsonify(approval_workflow.get_pending_approvals(current_actor()))


@signatures_bp.route("/sessions/<session_id>/delegate", methods=["POST"])
def delegate_approval(session_id):
    """Body: { delegate_to_user_id, reason? }"""
    actor = current_actor()
    data = json_body()
    if not data.get("delegate_to_user_id"):
        return api_error(E.VALIDATION_REQUIRED, "delegate_to_user_id is required")
    event = approval_workflow.delegate_approval(
        session_id, actor.id, data["delegate_to_user_id"], data.get("reason"),
    )
    return jsonify(event), 201


@signatures_bp.route("/sessions/<session_id>/approval-history", methods=["GET"])
def approval_history(session_id):
    current_actor()
    return jsonify(approval_workflow.get_approval_history(session_id))
