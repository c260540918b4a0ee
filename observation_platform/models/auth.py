"""
Identity model — the record the identity/role provider supplies.

The platform trusts ``User.role`` verbatim; credentials, tokens and SSO live
outside this service.
"""

from datetime import datetime, timezone

from observation_platform.models import db

# ── Role names (used verbatim in the allow-lists of services/authorization.py)
ROLE_ADMINISTRATOR = "Administrator"
ROLE_ZONE = "Zone"
ROLE_PROVINCIAL = "Provincial"
ROLE_DEPARTMENT = "Department"
ROLE_CLUSTER = "Cluster"
ROLE_DIRECTOR = "Director"
ROLE_OBSERVER = "Observer"
ROLE_TEACHER = "Teacher"

VALID_ROLES = frozenset({
    ROLE_ADMINISTRATOR,
    ROLE_ZONE,
    ROLE_PROVINCIAL,
    ROLE_DEPARTMENT,
    ROLE_CLUSTER,
    ROLE_DIRECTOR,
    ROLE_OBSERVER,
    ROLE_TEACHER,
})


class User(db.Model):
    """A person acting on observation sessions."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=True)
    full_name = db.Column(db.String(200), nullable=False)
    role = db.Column(
        db.String(30), nullable=False, default=ROLE_TEACHER,
        comment="Administrator | Zone | Provincial | Department | Cluster | Director | Observer | Teacher",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<User {self.id}: {self.username} ({self.role})>"
