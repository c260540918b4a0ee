"""
Role allow-lists and capability lookup.

Every "which roles may do X" rule of the platform lives in the tables
below and is checked by ``is_role_allowed`` / ``require_role`` /
``has_capability``.  SessionLifecycle and ApprovalWorkflow both read
from here, so an allow-list change is a one-line data edit.

Role names are the identity provider's names (``Administrator``,
``Director``...).  Signature roles are stored lower-cased (``director``),
so comparisons are case-insensitive.

Usage:
    from observation_platform.services.authorization import require_role, TRANSITION_ROLES

    require_role(actor.role, TRANSITION_ROLES[("completed", "approved")],
                 action="approve session")
"""

from observation_platform.core.exceptions import UnauthorizedError
from observation_platform.models.auth import (
    ROLE_ADMINISTRATOR,
    ROLE_CLUSTER,
    ROLE_DEPARTMENT,
    ROLE_DIRECTOR,
    ROLE_OBSERVER,
    ROLE_PROVINCIAL,
    ROLE_TEACHER,
    ROLE_ZONE,
)
from observation_platform.models.observation import (
    STATUS_APPROVED,
    STATUS_COMPLETED,
)
from observation_platform.models.signature import SIGNER_OBSERVER, SIGNER_TEACHER

# ── Session state-machine edges that need a role ─────────────────────────────
# Edges absent from this table are performed by the session's observer.
TRANSITION_ROLES: dict[tuple[str, str], tuple[str, ...]] = {
    (STATUS_COMPLETED, STATUS_APPROVED): (
        ROLE_ADMINISTRATOR, ROLE_ZONE, ROLE_PROVINCIAL, ROLE_DIRECTOR,
    ),
}

# ── Approval steps → roles whose signature completes the step ────────────────
STEP_SIGNATURES = "signatures"
STEP_SUPERVISOR = "supervisor"
STEP_HIGHER = "higher"

APPROVAL_STEP_ROLES: dict[str, tuple[str, ...]] = {
    STEP_SIGNATURES: (SIGNER_TEACHER, SIGNER_OBSERVER),
    STEP_SUPERVISOR: (ROLE_DIRECTOR, ROLE_CLUSTER),
    STEP_HIGHER: (ROLE_PROVINCIAL, ROLE_ZONE, ROLE_ADMINISTRATOR),
}

# ── Capabilities per role ────────────────────────────────────────────────────
CAP_APPROVE_SESSIONS = "approve_sessions"
CAP_VIEW_ALL_SESSIONS = "view_all_sessions"
CAP_DELETE_ANY_SESSION = "delete_any_session"
CAP_VERIFY_SIGNATURES = "verify_signatures"
CAP_REMOVE_SIGNATURES = "remove_signatures"

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    ROLE_ADMINISTRATOR: frozenset({
        CAP_APPROVE_SESSIONS, CAP_VIEW_ALL_SESSIONS, CAP_DELETE_ANY_SESSION,
        CAP_VERIFY_SIGNATURES, CAP_REMOVE_SIGNATURES,
    }),
    ROLE_ZONE: frozenset({CAP_APPROVE_SESSIONS, CAP_VIEW_ALL_SESSIONS, CAP_VERIFY_SIGNATURES}),
    ROLE_PROVINCIAL: frozenset({CAP_APPROVE_SESSIONS, CAP_VIEW_ALL_SESSIONS, CAP_VERIFY_SIGNATURES}),
    ROLE_DEPARTMENT: frozenset({CAP_VIEW_ALL_SESSIONS}),
    ROLE_CLUSTER: frozenset({CAP_APPROVE_SESSIONS, CAP_VIEW_ALL_SESSIONS}),
    ROLE_DIRECTOR: frozenset({CAP_APPROVE_SESSIONS, CAP_VIEW_ALL_SESSIONS, CAP_VERIFY_SIGNATURES}),
    ROLE_OBSERVER: frozenset(),
    ROLE_TEACHER: frozenset(),
}


def _norm(role: str | None) -> str:
    return (role or "").strip().casefold()


def is_role_allowed(role: str | None, allowed) -> bool:
    """True when ``role`` matches any entry of ``allowed`` (case-insensitive)."""
    wanted = _norm(role)
    return bool(wanted) and any(_norm(a) == wanted for a in allowed)


def require_role(role: str | None, allowed, *, action: str) -> None:
    """Raise UnauthorizedError unless ``role`` is in ``allowed``."""
    if not is_role_allowed(role, allowed):
        raise UnauthorizedError(
            f"Role '{role}' is not authorized to {action}", role=role,
        )


def has_capability(role: str | None, capability: str) -> bool:
    """Look up a capability for a role; unknown roles have none."""
    for name, caps in ROLE_CAPABILITIES.items():
        if _norm(name) == _norm(role):
            return capability in caps
    return False


def transition_roles(from_status: str, to_status: str) -> tuple[str, ...] | None:
    """Allow-list for a state-machine edge, or None when the observer performs it."""
    return TRANSITION_ROLES.get((from_status, to_status))
