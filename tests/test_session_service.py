"""
Session CRUD: create against a form, visibility, listing filters, update
and delete guards, statistics.
"""

from datetime import date

import pytest

from observation_platform.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    SessionLockedError,
    ValidationError,
)
from observation_platform.models import db
from observation_platform.models.auth import (
    ROLE_ADMINISTRATOR,
    ROLE_DEPARTMENT,
    ROLE_OBSERVER,
)
from observation_platform.models.observation import (
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    ObservationForm,
    ObservationSession,
)
from observation_platform.services import session_service as svc


class TestCreate:
    def test_creates_draft_for_observer(self, make_form, observer):
        form = make_form(scale=2)
        result = svc.create_session({
            "form_id": form.id, "subject": "Khmer", "grade": 2,
            "school_name": " Angkor School ", "date_observed": "2025-03-03",
            "start_time": "08:00", "end_time": "08:45",
        }, observer)

        assert result["status"] == STATUS_DRAFT
        assert result["observer_id"] == observer.id
        assert result["observer_name"] == observer.full_name
        assert result["school_name"] == "Angkor School"
        assert result["grade"] == "2"
        assert result["start_time"] == "08:00"
        assert result["indicator_responses"] == []

    def test_with_initial_responses(self, make_form, observer):
        form = make_form(scale=2)
        first = form.active_indicators()[0]
        result = svc.create_session({
            "form_id": form.id, "subject": "Khmer", "grade": "1",
            "indicator_responses": [{"indicator_id": first.id, "selected_score": 3}],
        }, observer)
        assert [r["indicator_number"] for r in result["indicator_responses"]] == ["1.1"]

    def test_invalid_initial_response_creates_nothing(self, make_form, observer):
        form = make_form(scale=1)
        first = form.active_indicators()[0]
        with pytest.raises(ValidationError):
            svc.create_session({
                "form_id": form.id, "subject": "Khmer", "grade": "1",
                "indicator_responses": [{"indicator_id": first.id, "selected_score": 0}],
            }, observer)
        assert ObservationSession.query.count() == 0

    def test_required_fields(self, observer):
        with pytest.raises(ValidationError, match="form_id, subject, grade"):
            svc.create_session({}, observer)

    def test_unknown_form(self, observer):
        with pytest.raises(NotFoundError):
            svc.create_session({"form_id": 999, "subject": "Khmer", "grade": "1"}, observer)

    def test_subject_must_match_form(self, make_form, observer):
        form = make_form()
        with pytest.raises(ValidationError, match="subject"):
            svc.create_session({"form_id": form.id, "subject": "Math", "grade": "1"}, observer)

    def test_grade_must_be_in_range(self, make_form, observer):
        form = make_form(grade_range="1,2")
        with pytest.raises(ValidationError, match="grade"):
            svc.create_session({"form_id": form.id, "subject": "Khmer", "grade": "5"}, observer)

    def test_bad_date(self, make_form, observer):
        form = make_form()
        with pytest.raises(ValidationError) as exc:
            svc.create_session({
                "form_id": form.id, "subject": "Khmer", "grade": "1", "date_observed": "03/33/2025",
            }, observer)
        assert "date_observed" in exc.value.details


class TestReadAndList:
    def test_observer_reads_own_session(self, make_form, make_session, observer):
        s = make_session(make_form(), observer)
        result = svc.get_session(s.id, observer)
        assert result["form"]["id"] == s.form_id
        assert len(result["indicator_responses"]) == 3
        assert result["signatures"] == []

    def test_other_observer_forbidden(self, make_form, make_session, observer, make_user):
        s = make_session(make_form(), observer)
        with pytest.raises(ForbiddenError):
            svc.get_session(s.id, make_user(ROLE_OBSERVER))

    def test_view_all_role_reads_any(self, make_form, make_session, observer, make_user):
        s = make_session(make_form(), observer)
        assert svc.get_session(s.id, make_user(ROLE_DEPARTMENT))["id"] == s.id

    def test_list_is_scoped_to_observer(self, make_form, make_session, observer, make_user):
        form = make_form()
        make_session(form, observer)
        make_session(form, make_user(ROLE_OBSERVER))

        assert svc.list_sessions(observer)["total"] == 1
        assert svc.list_sessions(make_user(ROLE_ADMINISTRATOR))["total"] == 2

    def test_filters_and_pagination(self, make_form, make_session, observer):
        form = make_form()
        make_session(form, observer, school_name="North School", date_observed=date(2025, 1, 10))
        make_session(form, observer, school_name="South School", date_observed=date(2025, 2, 10))
        make_session(form, observer, school_name="South Annex", date_observed=date(2025, 3, 10),
                     status=STATUS_COMPLETED)

        assert svc.list_sessions(observer, {"search": "south"})["total"] == 2
        assert svc.list_sessions(observer, {"status": STATUS_COMPLETED})["total"] == 1
        assert svc.list_sessions(observer, {"date_from": "2025-02-01"})["total"] == 2

        page = svc.list_sessions(observer, page=2, limit=2)
        assert page["total_pages"] == 2
        assert [s["school_name"] for s in page["sessions"]] == ["North School"]

    def test_unknown_status_filter(self, observer):
        with pytest.raises(ValidationError):
            svc.list_sessions(observer, {"status": "archived"})


class TestUpdateAndDelete:
    def test_update_fields(self, make_form, make_session, observer):
        s = make_session(make_form(), observer)
        result = svc.update_session(s.id, {"teacher_name": "Lim Chea", "end_time": "09:30"}, observer)
        assert result["teacher_name"] == "Lim Chea"
        assert result["end_time"] == "09:30"

    def test_status_not_editable_here(self, make_form, make_session, observer):
        s = make_session(make_form(), observer)
        with pytest.raises(ValidationError, match="transition"):
            svc.update_session(s.id, {"status": STATUS_COMPLETED}, observer)

    def test_subject_is_fixed(self, make_form, make_session, observer):
        s = make_session(make_form(), observer)
        assert svc.update_session(s.id, {"subject": "Math"}, observer)["subject"] == "Khmer"

    def test_update_locked(self, make_form, make_session, observer):
        s = make_session(make_form(), observer, status=STATUS_COMPLETED)
        with pytest.raises(SessionLockedError):
            svc.update_session(s.id, {"school_name": "x"}, observer)

    def test_update_by_stranger(self, make_form, make_session, observer, make_user):
        s = make_session(make_form(), observer, status=STATUS_IN_PROGRESS)
        with pytest.raises(ForbiddenError):
            svc.update_session(s.id, {"school_name": "x"}, make_user(ROLE_ADMINISTRATOR))

    def test_delete_draft(self, make_form, make_session, observer):
        s = make_session(make_form(), observer)
        svc.delete_session(s.id, observer)
        assert db.session.get(ObservationSession, s.id) is None

    def test_admin_deletes_any_draft(self, make_form, make_session, observer, make_user):
        s = make_session(make_form(), observer)
        svc.delete_session(s.id, make_user(ROLE_ADMINISTRATOR))
        assert ObservationSession.query.count() == 0

    def test_delete_non_draft_locked(self, make_form, make_session, observer):
        s = make_session(make_form(), observer, status=STATUS_IN_PROGRESS)
        with pytest.raises(SessionLockedError):
            svc.delete_session(s.id, observer)

    def test_delete_by_stranger(self, make_form, make_session, observer, make_user):
        s = make_session(make_form(), observer)
        with pytest.raises(ForbiddenError):
            svc.delete_session(s.id, make_user(ROLE_OBSERVER))


class TestStatistics:
    def test_counts_by_status(self, make_form, make_session, observer):
        form = make_form()
        make_session(form, observer)
        make_session(form, observer, status=STATUS_COMPLETED)
        make_session(form, observer, status=STATUS_COMPLETED)

        stats = svc.get_session_statistics(observer)
        assert stats == {"total": 3, "draft": 1, "in_progress": 0, "completed": 2, "approved": 0}


class TestDemoSeed:
    def test_seed_is_idempotent(self):
        from observation_platform.services.demo_seed import seed_demo_form, seed_demo_users

        form, created = seed_demo_form()
        again, created_again = seed_demo_form()
        assert created is True and created_again is False
        assert again.id == form.id
        assert [i.indicator_number for i in form.active_indicators()] == ["1.1", "1.2", "2.1", "2.2", "3.1", "4.1"]

        assert seed_demo_users() == 5
        assert seed_demo_users() == 0

    def test_cli_command(self, app):
        result = app.test_cli_runner().invoke(args=["seed-demo-form"])
        assert result.exit_code == 0
        assert ObservationForm.query.filter_by(code="G1-KH").count() == 1
