"""
Observation sessions blueprint.

Endpoint groups:
  CRUD                 POST/GET /api/v1/sessions
                       GET/PUT/DELETE /api/v1/sessions/<id>
                       GET  /api/v1/sessions/statistics
  Lifecycle            POST  /api/v1/sessions/<id>/transition
                       PATCH /api/v1/sessions/<id>/autosave
                       GET   /api/v1/sessions/<id>/progress
                       GET   /api/v1/sessions/<id>/workflow-state
                       GET   /api/v1/sessions/<id>/validation
  Indicator responses  GET/PUT/POST /api/v1/sessions/<id>/responses
                       GET   /api/v1/sessions/<id>/completion

Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from observation_platform.blueprints import current_actor, json_body, register_error_handlers
from observation_platform.services import (
    indicator_responses,
    session_lifecycle,
    session_service,
)
from observation_platform.utils.errors import E, api_error

logger = logging.getLogger(__name__)

sessions_bp = Blueprint("sessions", __name__, url_prefix="/api/v1")
register_error_handlers(sessions_bp)

_LIST_FILTERS = (
    "observer_id", "school_name", "teacher_name", "subject", "grade",
    "status", "date_from", "date_to", "search",
)


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════


@sessions_bp.route("/sessions", methods=["POST"])
def create_session():
    """Create a draft session observed by the caller.

    Body: { form_id, subject, grade, school_name?, teacher_name?, observer_name?,
            date_observed?, start_time?, end_time?, classification_level?,
            reflection_summary?, indicator_responses? }
    """
    actor = current_actor()
    return jsonify(session_service.create_session(json_body(), actor)), 201


@sessions_bp.route("/sessions", methods=["GET"])
def list_sessions():
    """List sessions visible to the caller. Query params: filters, page, limit."""
    actor = current_actor()
    filters = {k: request.args.get(k) for k in _LIST_FILTERS if request.args.get(k)}
    page = request.args.get("page", 1, type=int)
    limit = request.args.get("limit", type=int)
    return jsonify(session_service.list_sessions(actor, filters, page, limit))


@sessions_bp.route("/sessions/statistics", methods=["GET"])
def session_statistics():
    return jsonify(session_service.get_session_statistics(current_actor()))


@sessions_bp.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id):
    return jsonify(session_service.get_session(session_id, current_actor()))


@sessions_bp.route("/sessions/<session_id>", methods=["PUT"])
def update_session(session_id):
    actor = current_actor()
    return jsonify(session_service.update_session(session_id, json_body(), actor))


@sessions_bp.route("/sessions/<session_id>", methods=["DELETE"])
def delete_session(session_id):
    session_service.delete_session(session_id, current_actor())
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════


@sessions_bp.route("/sessions/<session_id>/transition", methods=["POST"])
def transition_session(session_id):
    """Move a session to another status.

    Body: { status }
    """
    actor = current_actor()
    target = (json_body().get("status") or "").strip()
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(session_lifecycle.request_transition(session_id, target, actor))


@sessions_bp.route("/sessions/<session_id>/autosave", methods=["PATCH"])
def autosave_session(session_id):
    actor = current_actor()
    return jsonify(session_lifecycle.auto_save(session_id, json_body(), actor))


@sessions_bp.route("/sessions/<session_id>/progress", methods=["GET"])
def session_progress(session_id):
    current_actor()
    return jsonify(session_lifecycle.get_session_progress(session_id))


@sessions_bp.route("/sessions/<session_id>/workflow-state", methods=["GET"])
def session_workflow_state(session_id):
    return jsonify(session_lifecycle.get_workflow_state(session_id, current_actor()))


@sessions_bp.route("/sessions/<session_id>/validation", methods=["GET"])
def session_validation(session_id):
    current_actor()
    return jsonify(session_lifecycle.validate_session_for_completion(session_id))


# ═════════════════════════════════════════════════════════════════════════
# Indicator responses
# ═════════════════════════════════════════════════════════════════════════


def _require_editor(session_id):
    """Responses are written by the session's observer only."""
    actor = current_actor()
    session = session_lifecycle.get_session_or_404(session_id)
    if not session_lifecycle.is_session_observer(session, actor):
        return api_error(E.FORBIDDEN, "Only the session's observer can record responses")
    return None


@sessions_bp.route("/sessions/<session_id>/responses", methods=["GET"])
def list_responses(session_id):
    current_actor()
    return jsonify(indicator_responses.list_responses(session_id))


@sessions_bp.route("/sessions/<session_id>/responses", methods=["POST"])
def upsert_response(session_id):
    """Create or replace one response.

    Body: { indicator_id, selected_score?, selected_level?, notes? }
    """
    err = _require_editor(session_id)
    if err:
        return err
    data = json_body()
    if data.get("indicator_id") is None:
        return api_error(E.VALIDATION_REQUIRED, "indicator_id is required")
    return jsonify(indicator_responses.upsert_response(session_id, data["indicator_id"], data)), 200


@sessions_bp.route("/sessions/<session_id>/responses", methods=["PUT"])
def replace_responses(session_id):
    """Replace every response of the session.

    Body: { indicator_responses: [ {indicator_id, selected_score?, selected_level?, notes?}, ... ] }
    """
    err = _require_editor(session_id)
    if err:
        return err
    responses = json_body().get("indicator_responses")
    if responses is None:
        return api_error(E.VALIDATION_REQUIRED, "indicator_responses is required")
    return jsonify(indicator_responses.bulk_replace_responses(session_id, responses))


@sessions_bp.route("/sessions/<session_id>/completion", methods=["GET"])
def session_completion(session_id):
    current_actor()
    return jsonify(indicator_responses.get_completion(session_id))
