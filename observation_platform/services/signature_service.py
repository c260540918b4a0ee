"""
Session sign-off — Signature store.

Data-entry signatures (``teacher``, ``observer``) are created here.
Approval-tier signatures (``director``, ``cluster``...) are only created by
approval_workflow.process_approval through ``build_signature``, so a
session can never collect a supervisor signature outside the workflow.

Every create / verify / remove appends one event to the signature audit
stream.  The audit write runs after the business commit; a failure there
is logged and never undoes the signature change.
"""

import hashlib
import json
import logging
from collections import Counter
from datetime import datetime, timezone

from observation_platform.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionLockedError,
    ValidationError,
)
from observation_platform.models import db
from observation_platform.models.audit import (
    SIGNATURE_CREATED,
    SIGNATURE_REMOVED,
    SIGNATURE_VERIFIED,
    SignatureAuditEvent,
    write_signature_event,
)
from observation_platform.models.auth import ROLE_TEACHER
from observation_platform.models.observation import STATUS_APPROVED, ObservationSession
from observation_platform.models.signature import (
    DATA_ENTRY_SIGNER_ROLES,
    METHOD_MANUAL,
    SIGNER_OBSERVER,
    SIGNER_TEACHER,
    Signature,
)
from observation_platform.services.authorization import (
    CAP_REMOVE_SIGNATURES,
    CAP_VERIFY_SIGNATURES,
    has_capability,
    is_role_allowed,
)
from observation_platform.services.session_lifecycle import commit_session
from observation_platform.utils.helpers import as_utc

logger = logging.getLogger(__name__)

MAX_SIGNATURE_BYTES = 1024 * 1024
REQUIRED_SIGNER_ROLES = [SIGNER_TEACHER, SIGNER_OBSERVER]


# ── Private helpers ──────────────────────────────────────────────────────────


def _get_session(session_id: str) -> ObservationSession:
    session = db.session.get(ObservationSession, session_id)
    if not session:
        raise NotFoundError(resource="ObservationSession", resource_id=session_id)
    return session


def _get_signature(signature_id: int) -> Signature:
    signature = db.session.get(Signature, signature_id)
    if not signature:
        raise NotFoundError(resource="Signature", resource_id=signature_id)
    return signature


def _same_name(a: str | None, b: str | None) -> bool:
    return bool(a and b) and a.strip().casefold() == b.strip().casefold()


def _audit(session_id: str, signature_id: int, action: str, actor, metadata: dict) -> None:
    try:
        write_signature_event(
            session_id=session_id,
            action=action,
            actor_id=actor.id,
            actor_role=actor.role,
            signature_id=signature_id,
            metadata=metadata,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception(
            "Signature audit write failed",
            extra={"session_id": session_id, "signature_id": signature_id, "action": action},
        )


def validate_signature_data(signature_data: str) -> str:
    """
    Check an image data URL and return its sha256 hex digest.

    Raises:
        ValidationError: not a ``data:image/`` URL, or larger than 1 MB.
    """
    errors = []
    if not isinstance(signature_data, str) or not signature_data.startswith("data:image/"):
        errors.append("Signature data must be a valid image data URL")
    elif len(signature_data) * 3 / 4 > MAX_SIGNATURE_BYTES:
        errors.append("Signature data exceeds maximum size limit")
    if errors:
        raise ValidationError("Invalid signature data: " + ", ".join(errors), details={"errors": errors})
    return hashlib.sha256(signature_data.encode("utf-8")).hexdigest()


def _signer_role_for(session: ObservationSession, requested: str | None, actor) -> str:
    """Resolve which data-entry role ``actor`` may sign ``session`` as."""
    role = (requested or "").strip().lower()
    if not role:
        role = SIGNER_OBSERVER if actor.id == session.observer_id else SIGNER_TEACHER

    if role not in DATA_ENTRY_SIGNER_ROLES:
        raise ForbiddenError(
            f"'{role}' signatures are recorded through the approval workflow",
            role=actor.role,
        )
    if role == SIGNER_TEACHER:
        allowed = is_role_allowed(actor.role, (ROLE_TEACHER,)) and _same_name(
            actor.full_name, session.teacher_name,
        )
    else:
        allowed = actor.id == session.observer_id
    if not allowed:
        raise ForbiddenError(f"You are not authorized to sign this session as {role}", role=actor.role)
    return role


def check_data_entry_signer(session: ObservationSession, role: str, actor) -> None:
    """Raise ForbiddenError unless ``actor`` may sign ``session`` as ``role``.

    Only teacher and observer roles are checked; approval-tier roles pass.
    """
    if (role or "").strip().lower() in DATA_ENTRY_SIGNER_ROLES:
        _signer_role_for(session, role, actor)


# ── Public API ───────────────────────────────────────────────────────────────


def build_signature(
    session: ObservationSession,
    role: str,
    actor,
    *,
    signature_data: str | None = None,
    method: str = METHOD_MANUAL,
) -> Signature:
    """
    Attach a new signature to ``session`` and flush. Never commits.

    Raises ConflictError when the role already signed this session.
    """
    role = role.lower()
    if any(s.role.lower() == role for s in session.signatures):
        raise ConflictError("Signature", "role", role)

    signature_hash = validate_signature_data(signature_data) if signature_data else None
    signature = Signature(
        role=role,
        signer_id=actor.id,
        signer_name=actor.full_name,
        signed_at=datetime.now(timezone.utc),
        signature_data=signature_data,
        signature_hash=signature_hash,
        signature_method=method,
    )
    session.signatures.append(signature)
    db.session.flush()
    return signature


def create_signature(session_id: str, data: dict, actor) -> dict:
    """
    Record a manual teacher or observer signature.

    ``data`` keys: role (optional, derived from the actor when absent),
    signature_data (optional image data URL), ip_address, user_agent,
    metadata (dict or JSON string, merged into the audit metadata).
    """
    session = _get_session(session_id)
    if session.status == STATUS_APPROVED:
        raise SessionLockedError(session.id, session.status, operation="sign")
    role = _signer_role_for(session, data.get("role"), actor)

    try:
        signature = build_signature(
            session, role, actor, signature_data=data.get("signature_data"),
        )
        # Touching the parent bumps its version so a racing approval loses.
        session.updated_at = datetime.now(timezone.utc)
        commit_session(session)
    except Exception:
        db.session.rollback()
        raise

    metadata = {
        "timestamp": signature.signed_at.isoformat(),
        "ip_address": data.get("ip_address"),
        "user_agent": data.get("user_agent"),
    }
    extra = data.get("metadata")
    if isinstance(extra, str):
        try:
            extra = json.loads(extra)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON signature metadata", extra={"session_id": session.id})
            extra = None
    if isinstance(extra, dict):
        metadata.update(extra)

    _audit(session.id, signature.id, SIGNATURE_CREATED, actor, metadata)
    logger.info(
        "Signature created",
        extra={"session_id": session.id, "signature_id": signature.id, "actor_id": actor.id, "action": role},
    )
    return signature.to_dict()


def list_signatures(session_id: str) -> list[dict]:
    session = _get_session(session_id)
    return [s.to_dict() for s in session.signatures]


def get_signature(signature_id: int) -> dict:
    return _get_signature(signature_id).to_dict()


def verify_signature(signature_id: int, verification: dict, actor) -> dict:
    """Record a verification of an existing signature. Audit-only; the row is unchanged."""
    signature = _get_signature(signature_id)
    if not has_capability(actor.role, CAP_VERIFY_SIGNATURES):
        raise ForbiddenError("You are not authorized to verify signatures", role=actor.role)

    _audit(signature.session_id, signature.id, SIGNATURE_VERIFIED, actor, {
        "verification_method": verification.get("verification_method"),
        "verification_result": verification.get("verification_result"),
        "verifier_comments": verification.get("verifier_comments"),
        "hash_matches": (
            signature.signature_hash == hashlib.sha256(signature.signature_data.encode("utf-8")).hexdigest()
            if signature.signature_data else None
        ),
    })
    return signature.to_dict()


def remove_signature(signature_id: int, actor) -> None:
    """Administrator removal. Refused once the session is approved."""
    signature = _get_signature(signature_id)
    if not has_capability(actor.role, CAP_REMOVE_SIGNATURES):
        raise ForbiddenError("You are not authorized to remove this signature", role=actor.role)
    session = signature.session
    if session is not None and session.status == STATUS_APPROVED:
        raise SessionLockedError(session.id, session.status, operation="remove signatures from")

    signature_ref = (signature.session_id, signature.id)
    role = signature.role
    try:
        db.session.delete(signature)
        if session is not None:
            session.updated_at = datetime.now(timezone.utc)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    _audit(*signature_ref, SIGNATURE_REMOVED, actor, {"reason": "manual_removal", "role": role})
    logger.info(
        "Signature removed",
        extra={"session_id": signature_ref[0], "signature_id": signature_ref[1], "actor_id": actor.id},
    )


def get_signature_requirements(session_id: str) -> dict:
    session = _get_session(session_id)
    completed = [s.role for s in session.signatures]
    pending = [r for r in REQUIRED_SIGNER_ROLES if r not in completed]
    return {
        "session_id": session.id,
        "required_signatures": list(REQUIRED_SIGNER_ROLES),
        "completed_signatures": completed,
        "pending_signatures": pending,
        "can_proceed": not pending,
    }


def get_signature_statistics() -> dict:
    signatures = Signature.query.all()
    verified_ids = {
        row.signature_id
        for row in SignatureAuditEvent.query.filter_by(action=SIGNATURE_VERIFIED).all()
    }
    live_ids = {s.id for s in signatures}

    return {
        "total_signatures": len(signatures),
        "signatures_by_role": dict(Counter(s.role for s in signatures)),
        "signatures_by_month": dict(Counter(
            as_utc(s.signed_at).strftime("%Y-%m") for s in signatures if s.signed_at
        )),
        "signatures_by_method": dict(Counter(s.signature_method for s in signatures)),
        "verification_rate": (
            round(len(verified_ids & live_ids) / len(signatures), 4) if signatures else 0.0
        ),
    }
