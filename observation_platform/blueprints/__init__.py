"""
Classroom Observation Platform
Blueprint registry and shared request helpers.

The actor is taken from the ``X-User-Id`` header and looked up in the
``users`` table; credential checks happen upstream of this service.
"""

import logging

from flask import g, request
from werkzeug.exceptions import HTTPException

from observation_platform.core.exceptions import (
    ConflictError,
    ForbiddenError,
    IncompleteSessionError,
    InvalidRequestError,
    InvalidResponseError,
    InvalidTransitionError,
    NotFoundError,
    SessionLockedError,
    ValidationError,
)
from observation_platform.models import db
from observation_platform.models.auth import User
from observation_platform.utils.errors import E, api_error

logger = logging.getLogger(__name__)


class UnauthenticatedError(Exception):
    """No usable ``X-User-Id`` header on the request."""


def current_actor() -> User:
    """Resolve the acting user for this request (cached on ``g``)."""
    raw = request.headers.get("X-User-Id", "").strip()
    actor = getattr(g, "actor", None)
    if actor is not None and str(actor.id) == raw:
        return actor

    if not raw:
        raise UnauthenticatedError("X-User-Id header is required")
    try:
        user_id = int(raw)
    except ValueError:
        raise UnauthenticatedError(f"Invalid X-User-Id header: {raw!r}") from None

    actor = db.session.get(User, user_id)
    if actor is None or not actor.is_active:
        raise UnauthenticatedError(f"Unknown or inactive user {user_id}")
    g.actor = actor
    g.actor_id, g.actor_role = actor.id, actor.role
    return actor


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp) -> None:
    """Map the platform exception hierarchy onto the standard JSON error body."""

    @bp.errorhandler(UnauthenticatedError)
    def _handle_unauthenticated(error):
        return api_error(E.UNAUTHENTICATED, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(InvalidTransitionError)
    def _handle_invalid_transition(error):
        return api_error(
            E.INVALID_TRANSITION, str(error),
            details={"from_status": error.from_status, "to_status": error.to_status},
        )

    @bp.errorhandler(ForbiddenError)
    def _handle_forbidden(error):
        return api_error(E.FORBIDDEN, str(error), details={"role": error.role} if error.role else None)

    @bp.errorhandler(IncompleteSessionError)
    def _handle_incomplete(error):
        return api_error(E.SESSION_INCOMPLETE, str(error), details=error.details)

    @bp.errorhandler(InvalidResponseError)
    def _handle_invalid_response(error):
        return api_error(E.INVALID_RESPONSE, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(InvalidRequestError)
    def _handle_invalid_request(error):
        return api_error(E.INVALID_REQUEST, str(error))

    @bp.errorhandler(SessionLockedError)
    def _handle_locked(error):
        return api_error(
            E.SESSION_LOCKED, str(error),
            details={"session_id": error.session_id, "status": error.status},
        )

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error):
        return api_error(
            E.CONFLICT_DUPLICATE, str(error),
            details={"resource": error.resource, "field": error.field},
        )

    @bp.errorhandler(HTTPException)
    def _handle_http(error):
        return api_error(E.INVALID_REQUEST, error.description or error.name, status=error.code)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
