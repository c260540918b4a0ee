"""
Shared pytest fixtures for the Classroom Observation Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_form / make_session / make_signature: factories
    - auth_headers: X-User-Id header builder for API tests
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest

from observation_platform import create_app
from observation_platform.models import db as _db
from observation_platform.models.auth import ROLE_OBSERVER, ROLE_TEACHER, User
from observation_platform.models.observation import (
    RUBRIC_CHECKBOX,
    RUBRIC_SCALE,
    STATUS_DRAFT,
    CompetencyDomain,
    Indicator,
    IndicatorResponse,
    LessonPhase,
    ObservationForm,
    ObservationSession,
)
from observation_platform.models.signature import METHOD_MANUAL, Signature

TEACHER_NAME = "Sok Dara"
BASE_TIME = datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)

_seq = {"n": 0}


def _next():
    _seq["n"] += 1
    return _seq["n"]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def _make_user(role=ROLE_OBSERVER, **kw):
    n = _next()
    user = User(
        username=kw.get("username", f"user{n}"),
        full_name=kw.get("full_name", f"Test User {n}"),
        role=role,
        is_active=kw.get("is_active", True),
    )
    _db.session.add(user)
    _db.session.flush()
    return user


def _make_form(scale=3, checkbox=0, **kw):
    """Form with ``scale`` scale indicators (max 3) then ``checkbox`` checkbox ones.

    Indicators are numbered 1.1, 1.2 ... in a single lesson phase, checkbox
    indicators go into a competency domain as 2.1, 2.2 ...
    """
    n = _next()
    form = ObservationForm(
        code=kw.get("code", f"F-{n}"),
        title=kw.get("title", f"Test form {n}"),
        subject=kw.get("subject", "Khmer"),
        grade_range=kw.get("grade_range", "1,2,3"),
    )
    phase = LessonPhase(title="Introduction", sort_order=1)
    for i in range(1, scale + 1):
        phase.indicators.append(Indicator(
            indicator_number=f"1.{i}", text=f"Scale indicator {i}",
            rubric_type=RUBRIC_SCALE, max_score=kw.get("max_score", 3),
        ))
    form.lesson_phases.append(phase)
    if checkbox:
        domain = CompetencyDomain(title="Classroom management", sort_order=1)
        for i in range(1, checkbox + 1):
            domain.indicators.append(Indicator(
                indicator_number=f"2.{i}", text=f"Checkbox indicator {i}",
                rubric_type=RUBRIC_CHECKBOX,
            ))
        form.competency_domains.append(domain)
    _db.session.add(form)
    _db.session.flush()
    return form


def _make_session(form, observer, status=STATUS_DRAFT, filled=True, answered=None, **kw):
    """Session on ``form`` observed by ``observer``.

    ``filled`` sets every required descriptive field; ``answered`` is the
    number of indicators (in order) to give a valid response, default all.
    """
    s = ObservationSession(
        form=form,
        observer_id=observer.id,
        subject=form.subject,
        grade=kw.get("grade", "1"),
        status=status,
    )
    if filled:
        s.school_name = kw.get("school_name", "Hun Sen Primary School")
        s.teacher_name = kw.get("teacher_name", TEACHER_NAME)
        s.observer_name = observer.full_name
        s.date_observed = kw.get("date_observed", date(2025, 3, 3))
        s.start_time = kw.get("start_time", time(8, 0))
        s.end_time = kw.get("end_time", time(9, 0))
    _db.session.add(s)
    _db.session.flush()

    indicators = form.active_indicators()
    for indicator in indicators[: len(indicators) if answered is None else answered]:
        if indicator.rubric_type == RUBRIC_SCALE:
            values = {"selected_score": 2}
        else:
            values = {"selected_level": "yes", "selected_score": 1}
        _db.session.add(IndicatorResponse(session_id=s.id, indicator_id=indicator.id, **values))
    _db.session.commit()
    return s


def _make_signature(session_obj, role, signer, minutes=0, method=METHOD_MANUAL):
    sig = Signature(
        session_id=session_obj.id,
        role=role,
        signer_id=signer.id,
        signer_name=signer.full_name,
        signed_at=BASE_TIME + timedelta(minutes=minutes),
        signature_method=method,
    )
    _db.session.add(sig)
    _db.session.commit()
    return sig


@pytest.fixture()
def make_user():
    return _make_user


@pytest.fixture()
def make_form():
    return _make_form


@pytest.fixture()
def make_session():
    return _make_session


@pytest.fixture()
def make_signature():
    return _make_signature


@pytest.fixture()
def observer():
    return _make_user(ROLE_OBSERVER, full_name="Chan Vanna")


@pytest.fixture()
def teacher():
    return _make_user(ROLE_TEACHER, full_name=TEACHER_NAME)


@pytest.fixture()
def auth_headers():
    def _headers(user):
        return {"X-User-Id": str(user.id)}
    return _headers
