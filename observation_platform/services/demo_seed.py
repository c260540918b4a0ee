"""
Demo reference data for local development (``flask seed-demo-form``).

Idempotent: rows are looked up by their natural key (form code, username)
and only created when missing.
"""

import logging

from observation_platform.models import db
from observation_platform.models.auth import (
    ROLE_ADMINISTRATOR,
    ROLE_CLUSTER,
    ROLE_DIRECTOR,
    ROLE_OBSERVER,
    ROLE_TEACHER,
    User,
)
from observation_platform.models.observation import (
    RUBRIC_CHECKBOX,
    RUBRIC_SCALE,
    CompetencyDomain,
    Indicator,
    LessonPhase,
    ObservationForm,
)

logger = logging.getLogger(__name__)

DEMO_FORM_CODE = "G1-KH"

_DEMO_PHASES = [
    ("Introduction", [
        ("1.1", "Teacher reviews the previous lesson", RUBRIC_SCALE, 3),
        ("1.2", "Lesson objective is stated clearly", RUBRIC_SCALE, 3),
    ]),
    ("Teaching and learning", [
        ("2.1", "Students work in pairs or groups", RUBRIC_SCALE, 3),
        ("2.2", "Teaching materials are used", RUBRIC_CHECKBOX, None),
    ]),
    ("Practice", [
        ("3.1", "Students practise independently", RUBRIC_SCALE, 3),
    ]),
]

_DEMO_DOMAINS = [
    ("Classroom management", [
        ("4.1", "Time is managed according to plan", RUBRIC_CHECKBOX, None),
    ]),
]

DEMO_USERS = [
    ("admin", "System Administrator", ROLE_ADMINISTRATOR),
    ("director", "School Director", ROLE_DIRECTOR),
    ("cluster", "Cluster Supervisor", ROLE_CLUSTER),
    ("observer", "Demo Observer", ROLE_OBSERVER),
    ("teacher", "Demo Teacher", ROLE_TEACHER),
]


def _add_groups(form, model, groups):
    for order, (title, indicators) in enumerate(groups, start=1):
        group = model(title=title, sort_order=order)
        form_groups = form.lesson_phases if model is LessonPhase else form.competency_domains
        form_groups.append(group)
        for number, text, rubric, max_score in indicators:
            group.indicators.append(Indicator(
                indicator_number=number, text=text, rubric_type=rubric, max_score=max_score,
            ))


def seed_demo_form() -> tuple[ObservationForm, bool]:
    """Create the demo Grade 1 Khmer form. Returns (form, created)."""
    form = ObservationForm.query.filter_by(code=DEMO_FORM_CODE).first()
    if form:
        return form, False

    form = ObservationForm(
        code=DEMO_FORM_CODE,
        title="Grade 1 Khmer lesson observation",
        subject="Khmer",
        grade_range="1",
    )
    _add_groups(form, LessonPhase, _DEMO_PHASES)
    _add_groups(form, CompetencyDomain, _DEMO_DOMAINS)
    db.session.add(form)
    db.session.commit()
    logger.info("Seeded demo observation form %s", DEMO_FORM_CODE)
    return form, True


def seed_demo_users() -> int:
    created = 0
    for username, full_name, role in DEMO_USERS:
        if User.query.filter_by(username=username).first():
            continue
        db.session.add(User(username=username, full_name=full_name, role=role))
        created += 1
    db.session.commit()
    logger.info("Seeded %s demo users", created)
    return created
