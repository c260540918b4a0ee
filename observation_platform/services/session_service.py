"""
Observation session CRUD around the lifecycle.

Status never changes here: ``update_session`` refuses a ``status`` key and
points callers at session_lifecycle.request_transition, which owns the
state machine and its guards.
"""

import logging

from flask import current_app
from sqlalchemy import func, or_

from observation_platform.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    SessionLockedError,
    ValidationError,
)
from observation_platform.models import db
from observation_platform.models.observation import (
    SESSION_STATUSES,
    STATUS_DRAFT,
    ObservationForm,
    ObservationSession,
)
from observation_platform.services import indicator_responses
from observation_platform.services.authorization import (
    CAP_VIEW_ALL_SESSIONS,
    has_capability,
)
from observation_platform.services.session_lifecycle import (
    can_delete,
    commit_session,
    get_session_or_404,
    is_session_observer,
)
from observation_platform.utils.helpers import parse_date_input, parse_time_input

logger = logging.getLogger(__name__)

TEXT_FIELDS = (
    "school_name", "teacher_name", "observer_name", "subject", "grade",
    "classification_level", "reflection_summary",
)
DATE_FIELDS = ("date_observed",)
TIME_FIELDS = ("start_time", "end_time")

# subject/grade are fixed by the form once a session exists.
UPDATABLE_FIELDS = tuple(f for f in TEXT_FIELDS if f not in ("subject", "grade")) + DATE_FIELDS + TIME_FIELDS


def _parsed_fields(data: dict, fields) -> dict:
    """Pick ``fields`` out of ``data``, parsing dates and times."""
    values = {}
    errors = {}
    for field in fields:
        if field not in data:
            continue
        raw = data[field]
        try:
            if field in DATE_FIELDS:
                values[field] = parse_date_input(raw)
            elif field in TIME_FIELDS:
                values[field] = parse_time_input(raw)
            else:
                values[field] = raw.strip() if isinstance(raw, str) else raw
        except ValueError as exc:
            errors[field] = str(exc)
    if errors:
        raise ValidationError("Invalid session fields", details=errors)
    return values


def _can_view(session: ObservationSession, actor) -> bool:
    return is_session_observer(session, actor) or has_capability(actor.role, CAP_VIEW_ALL_SESSIONS)


# ── Create / read ────────────────────────────────────────────────────────────


def create_session(data: dict, actor) -> dict:
    """
    Start a draft session for ``actor`` as observer.

    The form must exist, its subject must equal the session subject and its
    grade range must include the session grade.
    """
    missing = [f for f in ("form_id", "subject", "grade") if not data.get(f)]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={f: "required" for f in missing},
        )

    form = db.session.get(ObservationForm, data["form_id"])
    if not form:
        raise NotFoundError(resource="ObservationForm", resource_id=data["form_id"])
    if form.subject != data["subject"]:
        raise ValidationError(
            f"Form subject '{form.subject}' does not match session subject '{data['subject']}'",
            details={"subject": data["subject"]},
        )
    if str(data["grade"]) not in form.grades:
        raise ValidationError(
            f"Form grade range '{form.grade_range}' does not include session grade '{data['grade']}'",
            details={"grade": data["grade"]},
        )

    values = _parsed_fields({**data, "grade": str(data["grade"])}, TEXT_FIELDS + DATE_FIELDS + TIME_FIELDS)
    session = ObservationSession(
        form=form,
        observer_id=actor.id,
        status=STATUS_DRAFT,
        **values,
    )
    if not session.observer_name:
        session.observer_name = actor.full_name

    try:
        db.session.add(session)
        db.session.flush()
        if data.get("indicator_responses"):
            batch = indicator_responses.prepare_batch(session, data["indicator_responses"])
            indicator_responses.apply_batch(session, batch)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Observation session created",
        extra={"session_id": session.id, "actor_id": actor.id, "actor_role": actor.role},
    )
    return session.to_dict(include_responses=True)


def get_session(session_id: str, actor) -> dict:
    session = get_session_or_404(session_id)
    if not _can_view(session, actor):
        raise ForbiddenError("Access denied to this observation session", role=actor.role)
    d = session.to_dict(include_responses=True, include_signatures=True)
    d["form"] = session.form.to_dict()
    return d


def _scoped_query(actor):
    q = ObservationSession.query
    if not has_capability(actor.role, CAP_VIEW_ALL_SESSIONS):
        q = q.filter(ObservationSession.observer_id == actor.id)
    return q


def list_sessions(actor, filters: dict | None = None, page: int = 1, limit: int | None = None) -> dict:
    """
    Paginated sessions visible to ``actor``, newest observation first.

    Filters: observer_id, school_name, teacher_name (substring), subject,
    grade, status, date_from, date_to, search (school or teacher substring).
    """
    filters = filters or {}
    default_limit = current_app.config.get("SESSIONS_PAGE_SIZE", 10)
    max_limit = current_app.config.get("SESSIONS_MAX_PAGE_SIZE", 100)
    page = max(1, int(page or 1))
    limit = min(max(1, int(limit or default_limit)), max_limit)

    q = _scoped_query(actor)
    if filters.get("observer_id"):
        q = q.filter(ObservationSession.observer_id == int(filters["observer_id"]))
    if filters.get("school_name"):
        q = q.filter(ObservationSession.school_name.ilike(f"%{filters['school_name']}%"))
    if filters.get("teacher_name"):
        q = q.filter(ObservationSession.teacher_name.ilike(f"%{filters['teacher_name']}%"))
    if filters.get("subject"):
        q = q.filter(ObservationSession.subject == filters["subject"])
    if filters.get("grade"):
        q = q.filter(ObservationSession.grade == str(filters["grade"]))
    if filters.get("status"):
        if filters["status"] not in SESSION_STATUSES:
            raise ValidationError(
                f"Unknown status '{filters['status']}'",
                details={"status": list(SESSION_STATUSES)},
            )
        q = q.filter(ObservationSession.status == filters["status"])
    try:
        date_from = parse_date_input(filters.get("date_from"))
        date_to = parse_date_input(filters.get("date_to"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if date_from:
        q = q.filter(ObservationSession.date_observed >= date_from)
    if date_to:
        q = q.filter(ObservationSession.date_observed <= date_to)
    if filters.get("search"):
        term = f"%{filters['search']}%"
        q = q.filter(or_(
            ObservationSession.teacher_name.ilike(term),
            ObservationSession.school_name.ilike(term),
        ))

    q = q.order_by(
        ObservationSession.date_observed.desc(),
        ObservationSession.created_at.desc(),
    )
    paginated = q.paginate(page=page, per_page=limit, error_out=False)
    return {
        "sessions": [s.to_dict() for s in paginated.items],
        "total": paginated.total,
        "page": page,
        "limit": limit,
        "total_pages": paginated.pages,
    }


# ── Update / delete ──────────────────────────────────────────────────────────


def update_session(session_id: str, data: dict, actor) -> dict:
    """
    Edit descriptive fields and, optionally, replace all indicator responses.

    Same guards as auto-save: locked sessions raise SessionLockedError,
    anyone but the observer gets ForbiddenError.
    """
    if "status" in data:
        raise ValidationError(
            "Status cannot be changed here; request a transition instead",
            details={"status": data["status"]},
        )

    session = get_session_or_404(session_id)
    if not session.is_editable:
        raise SessionLockedError(session.id, session.status, operation="update")
    if not is_session_observer(session, actor):
        raise ForbiddenError("You cannot edit this observation session", role=actor.role)

    values = _parsed_fields(data, UPDATABLE_FIELDS)
    batch = None
    if data.get("indicator_responses") is not None:
        batch = indicator_responses.prepare_batch(session, data["indicator_responses"])

    try:
        for field, value in values.items():
            setattr(session, field, value)
        if batch is not None:
            indicator_responses.apply_batch(session, batch)
        commit_session(session)
    except Exception:
        db.session.rollback()
        raise

    return session.to_dict(include_responses=True)


def delete_session(session_id: str, actor) -> None:
    """Hard delete. Only draft sessions, only by their observer or an administrator."""
    session = get_session_or_404(session_id)
    if session.status != STATUS_DRAFT:
        raise SessionLockedError(session.id, session.status, operation="delete")
    if not can_delete(session, actor):
        raise ForbiddenError("You cannot delete this observation session", role=actor.role)

    db.session.delete(session)
    db.session.commit()
    logger.info(
        "Observation session deleted",
        extra={"session_id": session_id, "actor_id": actor.id, "actor_role": actor.role},
    )


def get_session_statistics(actor) -> dict:
    rows = (
        _scoped_query(actor)
        .with_entities(ObservationSession.status, func.count(ObservationSession.id))
        .group_by(ObservationSession.status)
        .all()
    )
    counts = {status: 0 for status in SESSION_STATUSES}
    counts.update({status: count for status, count in rows})
    return {"total": sum(counts.values()), **counts}
