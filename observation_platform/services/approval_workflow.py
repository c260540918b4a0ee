"""
Approval workflow — multi-step sign-off layered on completed sessions.

Steps are derived from the session's signatures on every call and never
stored:

    1. teacher + observer signatures          (always)
    2. Director or Cluster signature          (requires_supervisor_approval)
    3. Provincial, Zone or Administrator      (requires_higher_approval)

``process_approval`` is the only path that records approval-tier
signatures and the only path, besides SessionLifecycle's guarded
completed → approved edge, that moves a session to ``approved``.  It
locks the session row and relies on the session's optimistic version,
so two approvers racing on one session cannot both miss the final
transition.

Usage:
    from observation_platform.services.approval_workflow import evaluate, process_approval

    evaluate(session_id)["next_approvers"]
    process_approval({"session_id": sid, "action": "approve", "signature_data": url}, actor)
"""

import logging
from datetime import datetime, timezone

from observation_platform.core.exceptions import (
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
)
from observation_platform.models import db
from observation_platform.models.audit import (
    ACTION_APPROVE,
    ACTION_DELEGATE,
    ACTION_REJECT,
    ACTION_REQUEST_CHANGES,
    write_approval_event,
)
from observation_platform.models.auth import User
from observation_platform.models.observation import (
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    ObservationSession,
)
from observation_platform.models.signature import METHOD_DIGITAL_APPROVAL
from observation_platform.services import audit_trail, signature_service
from observation_platform.services.authorization import (
    APPROVAL_STEP_ROLES,
    CAP_APPROVE_SESSIONS,
    STEP_HIGHER,
    STEP_SIGNATURES,
    STEP_SUPERVISOR,
    has_capability,
    is_role_allowed,
)
from observation_platform.services.session_lifecycle import commit_session, get_session_or_404
from observation_platform.utils.helpers import as_utc

logger = logging.getLogger(__name__)

STEP_DESCRIPTIONS = {
    STEP_SIGNATURES: "Teacher and Observer signatures required",
    STEP_SUPERVISOR: "Supervisor approval required",
    STEP_HIGHER: "Higher level approval required",
}

# Session status each non-approve action sends the session back to.
RETURN_STATUS = {
    ACTION_REJECT: STATUS_DRAFT,
    ACTION_REQUEST_CHANGES: STATUS_IN_PROGRESS,
}


# ── Step policy hooks ────────────────────────────────────────────────────────


def requires_supervisor_approval(session: ObservationSession) -> bool:
    return True


def requires_higher_approval(session: ObservationSession) -> bool:
    return False


# ── Derived steps ────────────────────────────────────────────────────────────


def _signed_key(signature):
    return as_utc(signature.signed_at)


def _step(number: int, kind: str, signatures: list) -> dict:
    required = list(APPROVAL_STEP_ROLES[kind])
    matching = sorted(
        (s for s in signatures if is_role_allowed(s.role, required)), key=_signed_key,
    )

    if kind == STEP_SIGNATURES:
        signed_roles = {s.role.lower() for s in matching}
        is_completed = all(r.lower() in signed_roles for r in required)
        decisive = matching[-1] if is_completed else None
    else:
        is_completed = bool(matching)
        decisive = matching[0] if is_completed else None

    return {
        "step_number": number,
        "required_roles": required,
        "description": STEP_DESCRIPTIONS[kind],
        "is_completed": is_completed,
        "completed_by": decisive.signer_name if decisive else None,
        "completed_at": _signed_key(decisive).isoformat() if decisive else None,
    }


def build_steps(session: ObservationSession) -> list[dict]:
    """
    The approval steps of ``session`` with their completion, computed from
    its current signatures. Pure: no writes, no caching.

    Step 1 completes when both teacher and observer signed; ``completed_by``
    and ``completed_at`` come from the later of the two. Later steps complete
    on the first signature bearing one of their roles.
    """
    kinds = [STEP_SIGNATURES]
    if requires_supervisor_approval(session):
        kinds.append(STEP_SUPERVISOR)
    if requires_higher_approval(session):
        kinds.append(STEP_HIGHER)

    signatures = list(session.signatures)
    return [_step(n, kind, signatures) for n, kind in enumerate(kinds, start=1)]


def evaluate_session(session: ObservationSession) -> dict:
    steps = build_steps(session)
    pending = next((s for s in steps if not s["is_completed"]), None)
    is_completed = pending is None

    return {
        "session_id": session.id,
        "current_step": steps[-1]["step_number"] if is_completed else pending["step_number"],
        "total_steps": len(steps),
        "steps": steps,
        "is_completed": is_completed,
        "can_proceed": not is_completed,
        "next_approvers": [] if is_completed else list(pending["required_roles"]),
    }


def evaluate(session_id: str) -> dict:
    """Current approval workflow of a session."""
    return evaluate_session(get_session_or_404(session_id))


# ── Processing ───────────────────────────────────────────────────────────────


def _get_user(user_id) -> User:
    user = db.session.get(User, user_id) if user_id is not None else None
    if not user:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _coerce_user_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"Invalid delegate user id: {value!r}") from None


def process_approval(request: dict, actor) -> dict:
    """
    Apply one approval action to a completed session.

    ``request`` keys: session_id, action (approve | reject | request_changes
    | delegate), comments, signature_data, delegate_to_user_id.

    Raises:
        NotFoundError:       unknown session or delegate user
        ForbiddenError:      actor's role is not among the next approvers
        InvalidRequestError: session not completed, unknown action, or
                             delegate without a target
        ConflictError:       role already signed, or a concurrent writer won

    Returns:
        {"session": ..., "workflow": ...}
    """
    session = get_session_or_404(request.get("session_id"), for_update=True)
    action = request.get("action")
    workflow = evaluate_session(session)

    if not is_role_allowed(actor.role, workflow["next_approvers"]):
        raise ForbiddenError("You are not authorized to approve this session", role=actor.role)
    if session.status != STATUS_COMPLETED:
        raise InvalidRequestError(
            f"Approval actions need a completed session; status is '{session.status}'"
        )

    if action == ACTION_APPROVE and request.get("signature_data"):
        signature_service.check_data_entry_signer(session, actor.role, actor)

    delegate_to = None
    previous_status = session.status
    try:
        if action == ACTION_APPROVE:
            if request.get("signature_data"):
                signature_service.build_signature(
                    session, actor.role, actor,
                    signature_data=request["signature_data"],
                    method=METHOD_DIGITAL_APPROVAL,
                )
            if evaluate_session(session)["is_completed"]:
                session.status = STATUS_APPROVED
            # Always touch the row so the version check serialises approvers.
            session.updated_at = datetime.now(timezone.utc)
        elif action in RETURN_STATUS:
            session.status = RETURN_STATUS[action]
        elif action == ACTION_DELEGATE:
            if not request.get("delegate_to_user_id"):
                raise InvalidRequestError("Delegate user ID is required for delegation")
            delegate_to = _get_user(_coerce_user_id(request["delegate_to_user_id"]))
        else:
            raise InvalidRequestError(f"Invalid approval action: {action}")
        commit_session(session)
    except Exception:
        db.session.rollback()
        raise

    metadata = {
        "workflow_step": workflow["current_step"],
        "delegate_to_user_id": delegate_to.id if delegate_to else None,
    }
    try:
        write_approval_event(
            session_id=session.id,
            action=action,
            actor_id=actor.id,
            actor_role=actor.role,
            comments=request.get("comments") or (
                "Approval delegated" if action == ACTION_DELEGATE else None
            ),
            metadata=metadata,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception(
            "Approval audit write failed",
            extra={"session_id": session.id, "action": action, "actor_id": actor.id},
        )

    logger.info(
        "Approval action processed",
        extra={
            "session_id": session.id,
            "action": action,
            "actor_id": actor.id,
            "actor_role": actor.role,
            "from_status": previous_status,
            "to_status": session.status,
        },
    )
    return {
        "session": session.to_dict(include_signatures=True),
        "workflow": evaluate_session(session),
    }


def get_pending_approvals(actor) -> list[dict]:
    """
    Completed sessions waiting on the actor's role.

    Roles without the ``approve_sessions`` capability get ``[]`` without a scan.
    """
    if not has_capability(actor.role, CAP_APPROVE_SESSIONS):
        return []

    pending = []
    sessions = (
        ObservationSession.query
        .filter_by(status=STATUS_COMPLETED)
        .order_by(ObservationSession.updated_at.asc())
        .all()
    )
    for session in sessions:
        workflow = evaluate_session(session)
        if not workflow["is_completed"] and is_role_allowed(actor.role, workflow["next_approvers"]):
            d = session.to_dict(include_signatures=True)
            d["workflow"] = workflow
            pending.append(d)
    return pending


def delegate_approval(session_id: str, from_user_id, to_user_id, reason: str | None = None) -> dict:
    """
    Record that ``from_user_id`` handed a pending approval to ``to_user_id``.

    Only an audit record: no signing authority moves, and the delegate must
    still act through ``process_approval``.
    """
    session = get_session_or_404(session_id)
    from_user = _get_user(from_user_id)
    to_user = _get_user(to_user_id)

    event = audit_trail.log_approval_event(
        session.id,
        ACTION_DELEGATE,
        from_user.id,
        from_user.role,
        comments=reason or "Approval delegated",
        metadata={"delegated_to": to_user.id, "delegated_to_role": to_user.role},
    )
    logger.info(
        "Approval delegated",
        extra={"session_id": session.id, "actor_id": from_user.id, "action": ACTION_DELEGATE},
    )
    return event


def get_approval_history(session_id: str) -> list[dict]:
    return audit_trail.get_approval_history(session_id)
