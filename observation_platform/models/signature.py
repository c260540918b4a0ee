"""
Session sign-off — Signature model.

At most one signature per role per session (unique constraint). Signatures
are immutable once written; the only removal path is an administrator via
services/signature_service.remove_signature, which is itself audited.
"""

from datetime import datetime, timezone

from observation_platform.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

SIGNER_TEACHER = "teacher"
SIGNER_OBSERVER = "observer"

# Roles that sign during data entry; every other role signs through approval.
DATA_ENTRY_SIGNER_ROLES = frozenset({SIGNER_TEACHER, SIGNER_OBSERVER})

METHOD_MANUAL = "manual"
METHOD_DIGITAL_APPROVAL = "digital_approval"
SIGNATURE_METHODS = frozenset({METHOD_MANUAL, METHOD_DIGITAL_APPROVAL})


class Signature(db.Model):
    """
    A recorded sign-off by one role on one session.

    ``role`` is stored lower-cased (``teacher``, ``observer``, ``director``...).
    ``signer_name`` is snapshotted at signing time so the trail survives
    later user renames or deletions.
    """

    __tablename__ = "signatures"
    __table_args__ = (
        db.UniqueConstraint("session_id", "role", name="uq_signature_session_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(36), db.ForeignKey("observation_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    role = db.Column(db.String(30), nullable=False)
    signer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    signer_name = db.Column(db.String(255), nullable=True)
    signed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    signature_data = db.Column(db.Text, nullable=True, comment="data:image/... URL")
    signature_hash = db.Column(db.String(64), nullable=True, comment="sha256 of signature_data")
    signature_method = db.Column(
        db.String(30), nullable=False, default=METHOD_MANUAL,
        comment="manual | digital_approval",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "signer_id": self.signer_id,
            "signer_name": self.signer_name,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
            "signature_method": self.signature_method,
            "signature_hash": self.signature_hash,
            "has_signature_data": bool(self.signature_data),
        }

    def __repr__(self) -> str:
        return f"<Signature #{self.id} {self.session_id} {self.role}>"
