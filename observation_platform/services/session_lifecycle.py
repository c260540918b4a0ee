"""
Observation session lifecycle — status state machine and write guards.

Edges (TRANSITIONS):
    draft        → in_progress, completed
    in_progress  → draft, completed
    completed    → approved
    approved     → (terminal)

Guards, in order, before anything is written:
    1. the edge exists                       → InvalidTransitionError
    2. role allow-list for the edge          → UnauthorizedError
       (edges without one belong to the session's observer → ForbiddenError)
    3. completion gate for completed-bound   → IncompleteSessionError
       edges, reporting every blocking reason
    4. approval steps complete for approved  → IncompleteSessionError

Usage:
    from observation_platform.services.session_lifecycle import request_transition

    request_transition(session_id, "completed", actor)
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from observation_platform.core.exceptions import (
    ConflictError,
    ForbiddenError,
    IncompleteSessionError,
    InvalidTransitionError,
    NotFoundError,
    SessionLockedError,
)
from observation_platform.models import db
from observation_platform.models.audit import ACTION_APPROVE, write_approval_event
from observation_platform.models.observation import (
    EDITABLE_STATUSES,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    ObservationSession,
)
from observation_platform.services import indicator_responses
from observation_platform.services.authorization import (
    CAP_DELETE_ANY_SESSION,
    has_capability,
    is_role_allowed,
    require_role,
    transition_roles,
)

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, tuple[str, ...]] = {
    STATUS_DRAFT: (STATUS_IN_PROGRESS, STATUS_COMPLETED),
    STATUS_IN_PROGRESS: (STATUS_DRAFT, STATUS_COMPLETED),
    STATUS_COMPLETED: (STATUS_APPROVED,),
    STATUS_APPROVED: (),
}

TRANSITION_DESCRIPTIONS = {
    (STATUS_DRAFT, STATUS_IN_PROGRESS): "Start observation session",
    (STATUS_DRAFT, STATUS_COMPLETED): "Complete observation session directly",
    (STATUS_IN_PROGRESS, STATUS_DRAFT): "Return to draft for editing",
    (STATUS_IN_PROGRESS, STATUS_COMPLETED): "Complete observation session",
    (STATUS_COMPLETED, STATUS_APPROVED): "Approve completed session",
}

COMPLETION_GATED = frozenset({STATUS_COMPLETED})

AUTO_SAVE_FIELDS = ("school_name", "teacher_name", "observer_name", "reflection_summary")

REQUIRED_FIELDS = (
    ("school_name", "School name is required"),
    ("teacher_name", "Teacher name is required"),
    ("observer_name", "Observer name is required"),
    ("date_observed", "Observation date is required"),
    ("start_time", "Start time is required"),
    ("end_time", "End time is required"),
)


# ── Loading & persistence ────────────────────────────────────────────────────


def get_session_or_404(session_id: str, *, for_update: bool = False) -> ObservationSession:
    session = db.session.get(
        ObservationSession, session_id, with_for_update=True if for_update else None,
    )
    if not session:
        raise NotFoundError(resource="ObservationSession", resource_id=session_id)
    return session


def commit_session(session: ObservationSession) -> None:
    """Commit pending work on ``session``; a lost version race becomes ConflictError."""
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(
            "Concurrent update lost the version check",
            extra={"session_id": session.id},
        )
        raise ConflictError("ObservationSession", "version", session.id)


def _filled(value) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


# ── Permission predicates ────────────────────────────────────────────────────


def is_session_observer(session: ObservationSession, actor) -> bool:
    return actor is not None and session.observer_id is not None and actor.id == session.observer_id


def can_edit(session: ObservationSession, actor) -> bool:
    return is_session_observer(session, actor) and session.status in EDITABLE_STATUSES


def can_delete(session: ObservationSession, actor) -> bool:
    privileged = is_session_observer(session, actor) or has_capability(
        getattr(actor, "role", None), CAP_DELETE_ANY_SESSION,
    )
    return privileged and session.status == STATUS_DRAFT


def can_perform_transition(session: ObservationSession, actor, to_status: str) -> bool:
    if to_status not in TRANSITIONS.get(session.status, ()):
        return False
    roles = transition_roles(session.status, to_status)
    if roles is not None:
        return is_role_allowed(actor.role, roles)
    return is_session_observer(session, actor)


def available_transitions(session: ObservationSession, actor) -> list[dict]:
    return [
        {
            "from": session.status,
            "to": to_status,
            "description": TRANSITION_DESCRIPTIONS[(session.status, to_status)],
            "validation_required": to_status in COMPLETION_GATED,
        }
        for to_status in TRANSITIONS.get(session.status, ())
        if can_perform_transition(session, actor, to_status)
    ]


# ── Completion gate ──────────────────────────────────────────────────────────


def completion_report(session: ObservationSession) -> dict:
    """Every reason ``session`` cannot be completed, plus the missing indicators."""
    errors = [message for field, message in REQUIRED_FIELDS if not _filled(getattr(session, field))]

    if session.start_time and session.end_time and session.end_time <= session.start_time:
        errors.append("End time must be after start time")

    completion = indicator_responses.compute_completion(session)
    missing = completion["missing_indicators"]
    if missing:
        errors.append(
            f"Incomplete indicator responses: {len(missing)} indicators missing "
            f"({completion['completion_percentage']}% complete): {', '.join(missing)}"
        )

    errors.extend(indicator_responses.check_responses(session)["errors"])
    return {"is_valid": not errors, "errors": errors, "missing_indicators": missing}


def validate_session_for_completion(session_id: str) -> dict:
    report = completion_report(get_session_or_404(session_id))
    return {"is_valid": report["is_valid"], "errors": report["errors"]}


# ── Transitions ──────────────────────────────────────────────────────────────


def _check_transition(session: ObservationSession, target_status: str, actor) -> None:
    if target_status not in TRANSITIONS.get(session.status, ()):
        raise InvalidTransitionError(session.status, target_status)

    roles = transition_roles(session.status, target_status)
    if roles is not None:
        require_role(actor.role, roles, action=f"move a session to '{target_status}'")
    elif not is_session_observer(session, actor):
        raise ForbiddenError(
            "Only the session's observer can perform this transition", role=actor.role,
        )

    if target_status in COMPLETION_GATED:
        report = completion_report(session)
        if not report["is_valid"]:
            raise IncompleteSessionError(report["errors"], report["missing_indicators"])

    if target_status == STATUS_APPROVED:
        from observation_platform.services.approval_workflow import evaluate_session

        workflow = evaluate_session(session)
        if not workflow["is_completed"]:
            raise IncompleteSessionError([
                f"Approval step {step['step_number']} is not complete: {step['description']}"
                for step in workflow["steps"]
                if not step["is_completed"]
            ])


def request_transition(session_id: str, target_status: str, actor) -> dict:
    """
    Move a session along one edge of the state machine.

    All guards run before the status is touched. The approved edge also
    records an ``approve`` event on the approval stream; a failure to write
    that event is logged and never undoes the committed status change.

    Returns:
        The refreshed session dict.
    """
    session = get_session_or_404(session_id, for_update=True)
    _check_transition(session, target_status, actor)

    previous_status = session.status
    session.status = target_status
    commit_session(session)

    logger.info(
        "Session status changed",
        extra={
            "session_id": session.id,
            "from_status": previous_status,
            "to_status": target_status,
            "actor_id": actor.id,
            "actor_role": actor.role,
        },
    )

    if target_status == STATUS_APPROVED:
        try:
            write_approval_event(
                session_id=session.id,
                action=ACTION_APPROVE,
                actor_id=actor.id,
                actor_role=actor.role,
                metadata={"from_status": previous_status, "to_status": target_status},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Audit write failed after approval", extra={"session_id": session.id})

    return session.to_dict(include_signatures=True)


# ── Auto-save ────────────────────────────────────────────────────────────────


def auto_save(session_id: str, data: dict, actor) -> dict:
    """
    Partial save while a session is still being drafted.

    Accepts the free-text fields in AUTO_SAVE_FIELDS and an optional
    ``indicator_responses`` list that replaces every stored response.
    Other keys are ignored.
    """
    session = get_session_or_404(session_id)
    if session.status not in EDITABLE_STATUSES:
        raise SessionLockedError(session.id, session.status, operation="auto-save")
    if not is_session_observer(session, actor):
        raise ForbiddenError("Only the session's observer can edit this session", role=actor.role)

    batch = None
    if data.get("indicator_responses") is not None:
        batch = indicator_responses.prepare_batch(session, data["indicator_responses"])

    try:
        for field in AUTO_SAVE_FIELDS:
            if field in data:
                setattr(session, field, data[field])
        if batch is not None:
            indicator_responses.apply_batch(session, batch)
        commit_session(session)
    except Exception:
        db.session.rollback()
        raise

    return {
        "session": session.to_dict(),
        "saved_at": datetime.now(timezone.utc).isoformat(),
    }


# ── Progress & workflow state ────────────────────────────────────────────────


def get_session_progress(session_id: str) -> dict:
    """
    Informational checklist, softer than the completion gate.

    Four items (basic info, observation details, indicators, reflection);
    ``progress_percentage`` is the rounded share of items done.
    """
    session = get_session_or_404(session_id)
    completion = indicator_responses.compute_completion(session)
    report = completion_report(session)

    checklist = [
        (
            all(_filled(getattr(session, f)) for f in ("school_name", "teacher_name", "observer_name")),
            "Basic information completed",
            "Complete basic information",
        ),
        (
            all(_filled(getattr(session, f)) for f in ("date_observed", "start_time", "end_time")),
            "Observation details completed",
            "Complete observation details",
        ),
        (
            completion["completion_percentage"] == 100 or completion["total_indicators"] == 0,
            "All indicators completed",
            f"Complete remaining {len(completion['missing_indicators'])} indicators",
        ),
        (
            _filled(session.reflection_summary),
            "Reflection summary completed",
            "Add reflection summary",
        ),
    ]
    completed_steps = [done_label for done, done_label, _ in checklist if done]
    remaining_steps = [todo_label for done, _, todo_label in checklist if not done]

    return {
        "session_id": session.id,
        "status": session.status,
        "progress_percentage": round(100 * len(completed_steps) / len(checklist)),
        "completed_steps": completed_steps,
        "remaining_steps": remaining_steps,
        "can_proceed_to_next": report["is_valid"] and session.status != STATUS_APPROVED,
    }


def get_workflow_state(session_id: str, actor) -> dict:
    session = get_session_or_404(session_id)
    return {
        "session_id": session.id,
        "current_status": session.status,
        "available_transitions": available_transitions(session, actor),
        "can_edit": can_edit(session, actor),
        "can_delete": can_delete(session, actor),
        "validation_errors": completion_report(session)["errors"],
    }
