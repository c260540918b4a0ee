"""
Audit trail blueprint — read-only views over the signature and approval streams.

Routes:
  GET /audit/sessions/<id>/timeline   – oldest first
  GET /audit/sessions/<id>            – latest first
  GET /audit/sessions/<id>/report     – counts + timeline with gaps
  GET /audit/search                   – session_id, actor_id, action, date_from, date_to
  GET /audit/statistics
  GET /audit/integrity
  GET /audit/export                   – CSV, optional session_id
"""

import logging

from flask import Blueprint, Response, jsonify, request

from observation_platform.blueprints import current_actor, register_error_handlers
from observation_platform.services import audit_trail
from observation_platform.utils.errors import E, api_error
from observation_platform.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1/audit")
register_error_handlers(audit_bp)


@audit_bp.before_request
def _require_actor():
    current_actor()


@audit_bp.route("/sessions/<session_id>/timeline", methods=["GET"])
def session_timeline(session_id):
    return jsonify(audit_trail.get_session_timeline(session_id))


@audit_bp.route("/sessions/<session_id>", methods=["GET"])
def session_audit_trail(session_id):
    return jsonify(audit_trail.get_session_audit_trail(session_id))


@audit_bp.route("/sessions/<session_id>/report", methods=["GET"])
def session_audit_report(session_id):
    return jsonify(audit_trail.get_audit_report(session_id))


@audit_bp.route("/search", methods=["GET"])
def search():
    try:
        date_from = parse_datetime_input(request.args.get("date_from"))
        date_to = parse_datetime_input(request.args.get("date_to"), end_of_day=True)
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc), status=400)
    return jsonify(audit_trail.search_audit_trail(
        session_id=request.args.get("session_id"),
        actor_id=request.args.get("actor_id"),
        action=request.args.get("action"),
        date_from=date_from,
        date_to=date_to,
    ))


@audit_bp.route("/statistics", methods=["GET"])
def statistics():
    return jsonify(audit_trail.get_audit_statistics())


@audit_bp.route("/integrity", methods=["GET"])
def integrity():
    return jsonify(audit_trail.validate_audit_integrity())


@audit_bp.route("/export", methods=["GET"])
def export_csv():
    session_id = request.args.get("session_id")
    filename = f"audit-{session_id}.csv" if session_id else "audit.csv"
    return Response(
        audit_trail.export_audit_csv(session_id),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
