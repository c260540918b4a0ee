"""
Classroom Observation Platform
Observation domain models.

Models:
    - ObservationForm: rubric template (subject + grade range)
    - LessonPhase / CompetencyDomain: groupings that own indicators
    - Indicator: a scored criterion (scale 1..max_score or checkbox)
    - ObservationSession: one classroom observation and its lifecycle status
    - IndicatorResponse: one answer per (session, indicator)

Status machine (enforced in services/session_lifecycle.py):
    draft → in_progress | completed
    in_progress → draft | completed
    completed → approved
    approved → (terminal)
"""

import re
import uuid
from datetime import datetime, timezone

from observation_platform.models import db

# ── Constants ────────────────────────────────────────────────────────────────

STATUS_DRAFT = "draft"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_APPROVED = "approved"

SESSION_STATUSES = (STATUS_DRAFT, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_APPROVED)
EDITABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_IN_PROGRESS})

RUBRIC_SCALE = "scale"
RUBRIC_CHECKBOX = "checkbox"
RUBRIC_TYPES = frozenset({RUBRIC_SCALE, RUBRIC_CHECKBOX})


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def indicator_sort_key(indicator_number: str | None) -> tuple:
    """Natural ordering for indicator numbers: "1.2" < "1.10" < "2.1"."""
    parts = re.split(r"[.\-]", indicator_number or "")
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts)


class ObservationForm(db.Model):
    """Rubric template that a session is recorded against."""

    __tablename__ = "observation_forms"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    title = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(100), nullable=False)
    grade_range = db.Column(
        db.String(50), nullable=False, default="",
        comment="Comma-separated grades, e.g. '1,2,3'",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    lesson_phases = db.relationship(
        "LessonPhase", backref="form", lazy="select",
        cascade="all, delete-orphan", order_by="LessonPhase.sort_order",
    )
    competency_domains = db.relationship(
        "CompetencyDomain", backref="form", lazy="select",
        cascade="all, delete-orphan", order_by="CompetencyDomain.sort_order",
    )

    @property
    def grades(self) -> list[str]:
        return [g.strip() for g in (self.grade_range or "").split(",") if g.strip()]

    def active_indicators(self) -> list["Indicator"]:
        """Union of active indicators from phases and domains, deduplicated, ordered."""
        seen: dict[int, Indicator] = {}
        for group in [*self.lesson_phases, *self.competency_domains]:
            for indicator in group.indicators:
                if indicator.is_active and indicator.id not in seen:
                    seen[indicator.id] = indicator
        return sorted(seen.values(), key=lambda i: indicator_sort_key(i.indicator_number))

    def to_dict(self, include_indicators: bool = False) -> dict:
        d = {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "subject": self.subject,
            "grade_range": self.grade_range,
        }
        if include_indicators:
            d["indicators"] = [i.to_dict() for i in self.active_indicators()]
        return d

    def __repr__(self) -> str:
        return f"<ObservationForm {self.code}>"


class LessonPhase(db.Model):
    __tablename__ = "lesson_phases"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.Integer, db.ForeignKey("observation_forms.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    indicators = db.relationship("Indicator", backref="phase", lazy="select")


class CompetencyDomain(db.Model):
    __tablename__ = "competency_domains"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.Integer, db.ForeignKey("observation_forms.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    indicators = db.relationship("Indicator", backref="domain", lazy="select")


class Indicator(db.Model):
    """
    A scored rubric criterion. Read-only reference data for the engine.

    ``max_score`` only applies to scale indicators; checkbox indicators
    record a ``selected_level`` and an optional 0/1 score.
    """

    __tablename__ = "indicators"

    id = db.Column(db.Integer, primary_key=True)
    indicator_number = db.Column(db.String(20), nullable=False, index=True)
    text = db.Column(db.Text, nullable=False, default="")
    rubric_type = db.Column(
        db.String(20), nullable=False, default=RUBRIC_SCALE,
        comment="scale | checkbox",
    )
    max_score = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    phase_id = db.Column(
        db.Integer, db.ForeignKey("lesson_phases.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    domain_id = db.Column(
        db.Integer, db.ForeignKey("competency_domains.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "indicator_number": self.indicator_number,
            "text": self.text,
            "rubric_type": self.rubric_type,
            "max_score": self.max_score,
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<Indicator {self.indicator_number} ({self.rubric_type})>"


class ObservationSession(db.Model):
    """
    One classroom-observation record.

    ``version`` is SQLAlchemy's optimistic-lock counter: every flush that
    touches the row checks and bumps it, so two writers racing on the same
    session cannot both commit a status change.
    """

    __tablename__ = "observation_sessions"
    __table_args__ = (
        db.Index("ix_obs_session_status", "status"),
        db.Index("ix_obs_session_observer", "observer_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    form_id = db.Column(
        db.Integer, db.ForeignKey("observation_forms.id"), nullable=False, index=True,
    )
    observer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    school_name = db.Column(db.String(255), nullable=True)
    teacher_name = db.Column(db.String(255), nullable=True)
    observer_name = db.Column(db.String(255), nullable=True)
    subject = db.Column(db.String(100), nullable=True)
    grade = db.Column(db.String(20), nullable=True)
    date_observed = db.Column(db.Date, nullable=True)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    classification_level = db.Column(db.String(50), nullable=True)
    reflection_summary = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default=STATUS_DRAFT,
        comment="draft | in_progress | completed | approved",
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    __mapper_args__ = {"version_id_col": version}

    form = db.relationship("ObservationForm", lazy="joined")
    observer = db.relationship("User", lazy="joined")
    responses = db.relationship(
        "IndicatorResponse", backref="session", lazy="select",
        cascade="all, delete-orphan",
    )
    signatures = db.relationship(
        "Signature", backref="session", lazy="select",
        cascade="all, delete-orphan", order_by="Signature.signed_at",
    )

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    def to_dict(self, include_responses: bool = False, include_signatures: bool = False) -> dict:
        d = {
            "id": self.id,
            "form_id": self.form_id,
            "observer_id": self.observer_id,
            "school_name": self.school_name,
            "teacher_name": self.teacher_name,
            "observer_name": self.observer_name,
            "subject": self.subject,
            "grade": self.grade,
            "date_observed": self.date_observed.isoformat() if self.date_observed else None,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
            "classification_level": self.classification_level,
            "reflection_summary": self.reflection_summary,
            "status": self.status,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_responses:
            ordered = sorted(
                self.responses,
                key=lambda r: indicator_sort_key(r.indicator.indicator_number if r.indicator else None),
            )
            d["indicator_responses"] = [r.to_dict() for r in ordered]
        if include_signatures:
            d["signatures"] = [s.to_dict() for s in self.signatures]
        return d

    def __repr__(self) -> str:
        return f"<ObservationSession {self.id} [{self.status}]>"


class IndicatorResponse(db.Model):
    """The observer's answer for one indicator in one session."""

    __tablename__ = "indicator_responses"
    __table_args__ = (
        db.UniqueConstraint("session_id", "indicator_id", name="uq_response_session_indicator"),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(36), db.ForeignKey("observation_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    indicator_id = db.Column(
        db.Integer, db.ForeignKey("indicators.id"), nullable=False, index=True,
    )
    selected_score = db.Column(db.Integer, nullable=True)
    selected_level = db.Column(db.String(50), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    indicator = db.relationship("Indicator", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "indicator_id": self.indicator_id,
            "indicator_number": self.indicator.indicator_number if self.indicator else None,
            "selected_score": self.selected_score,
            "selected_level": self.selected_level,
            "notes": self.notes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<IndicatorResponse {self.session_id}/{self.indicator_id}>"
