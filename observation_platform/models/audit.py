"""
Classroom Observation Platform
Audit domain model.

Models:
    - SignatureAuditEvent: append-only stream of signature events.
    - ApprovalAuditEvent:  append-only stream of approval-workflow events.

The two streams are written independently and merged at read time by
services/audit_trail.py. ``session_id`` is deliberately not a foreign key:
history outlives a deleted draft session.
"""

import json
from datetime import datetime, timezone

from observation_platform.models import db

# ── Constants ────────────────────────────────────────────────────────────────

SIGNATURE_CREATED = "signature_created"
SIGNATURE_VERIFIED = "signature_verified"
SIGNATURE_REMOVED = "signature_removed"

SIGNATURE_ACTIONS = frozenset({SIGNATURE_CREATED, SIGNATURE_VERIFIED, SIGNATURE_REMOVED})

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
ACTION_REQUEST_CHANGES = "request_changes"
ACTION_DELEGATE = "delegate"

APPROVAL_ACTIONS = frozenset({ACTION_APPROVE, ACTION_REJECT, ACTION_REQUEST_CHANGES, ACTION_DELEGATE})

STREAM_SIGNATURE = "signature"
STREAM_APPROVAL = "approval"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _AuditEventBase(db.Model):
    """Columns shared by both audit streams. Rows are never updated or deleted."""

    __abstract__ = True

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(36), nullable=False, index=True)
    action = db.Column(db.String(40), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)
    actor_role = db.Column(db.String(30), nullable=True)
    metadata_json = db.Column(
        db.Text, nullable=False, default="{}",
        comment="Opaque caller-serialised payload; stored and returned verbatim",
    )
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    stream = None

    @property
    def event_metadata(self) -> dict:
        """Best-effort JSON view of ``metadata_json`` for reporting."""
        try:
            value = json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}
        return value if isinstance(value, dict) else {}

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "stream": self.stream,
            "session_id": self.session_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "metadata": self.metadata_json,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class SignatureAuditEvent(_AuditEventBase):
    __tablename__ = "signature_audit_events"

    stream = STREAM_SIGNATURE

    signature_id = db.Column(db.Integer, nullable=True, index=True)

    def to_dict(self) -> dict:
        d = self._base_dict()
        d["signature_id"] = self.signature_id
        d["comments"] = None
        return d

    def __repr__(self):
        return f"<SignatureAuditEvent {self.id}: {self.action} on {self.session_id}>"


class ApprovalAuditEvent(_AuditEventBase):
    __tablename__ = "approval_audit_events"

    stream = STREAM_APPROVAL

    comments = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        d = self._base_dict()
        d["signature_id"] = None
        d["comments"] = self.comments
        return d

    def __repr__(self):
        return f"<ApprovalAuditEvent {self.id}: {self.action} on {self.session_id}>"


# ── Convenience writers ──────────────────────────────────────────────────────

def _serialise_metadata(metadata) -> str:
    if metadata is None:
        return "{}"
    if isinstance(metadata, str):
        return metadata
    return json.dumps(metadata, default=str)


def write_signature_event(
    *,
    session_id: str,
    action: str,
    actor_id,
    actor_role: str | None = None,
    signature_id: int | None = None,
    metadata=None,
    timestamp: datetime | None = None,
) -> SignatureAuditEvent:
    """
    Append one signature-stream row.  Uses ``flush`` so callers keep
    transaction control.
    """
    event = SignatureAuditEvent(
        session_id=str(session_id),
        action=action,
        actor_id=str(actor_id),
        actor_role=actor_role,
        signature_id=signature_id,
        metadata_json=_serialise_metadata(metadata),
        timestamp=timestamp or _utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    return event


def write_approval_event(
    *,
    session_id: str,
    action: str,
    actor_id,
    actor_role: str | None = None,
    comments: str | None = None,
    metadata=None,
    timestamp: datetime | None = None,
) -> ApprovalAuditEvent:
    """
    Append one approval-stream row.  Uses ``flush`` so callers keep
    transaction control.
    """
    event = ApprovalAuditEvent(
        session_id=str(session_id),
        action=action,
        actor_id=str(actor_id),
        actor_role=actor_role,
        comments=comments,
        metadata_json=_serialise_metadata(metadata),
        timestamp=timestamp or _utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    return event
