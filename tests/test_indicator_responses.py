"""
Indicator responses: rubric validation, upsert, bulk replace and completion.

Covers:
    A. validate_response rules per rubric type
    B. upsert / update / remove of single responses
    C. bulk replacement (all-or-nothing)
    D. completion percentage and missing indicators
    E. aggregate re-validation
"""

import pytest

from observation_platform.core.exceptions import (
    InvalidResponseError,
    NotFoundError,
    SessionLockedError,
    ValidationError,
)
from observation_platform.models import db
from observation_platform.models.observation import (
    RUBRIC_CHECKBOX,
    RUBRIC_SCALE,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    Indicator,
    IndicatorResponse,
)
from observation_platform.services import indicator_responses as svc


def _indicator(form, number):
    return next(i for i in form.active_indicators() if i.indicator_number == number)


# ═══════════════════════════════════════════════════════════════════════════════
# A — Rubric validation
# ═══════════════════════════════════════════════════════════════════════════════


class TestValidateResponse:
    scale = Indicator(indicator_number="1.1", rubric_type=RUBRIC_SCALE, max_score=3)
    checkbox = Indicator(indicator_number="2.1", rubric_type=RUBRIC_CHECKBOX)

    @pytest.mark.parametrize("score", [1, 2, 3])
    def test_scale_accepts_scores_in_range(self, score):
        svc.validate_response(self.scale, {"selected_score": score})

    @pytest.mark.parametrize("score", [0, 4, -1])
    def test_scale_rejects_out_of_range(self, score):
        with pytest.raises(InvalidResponseError, match="between 1 and 3"):
            svc.validate_response(self.scale, {"selected_score": score})

    def test_scale_requires_score(self):
        with pytest.raises(InvalidResponseError, match="required for scale"):
            svc.validate_response(self.scale, {"selected_level": "good"})

    def test_non_integer_score_rejected(self):
        with pytest.raises(InvalidResponseError, match="integer"):
            svc.validate_response(self.scale, {"selected_score": "2"})

    def test_checkbox_requires_level(self):
        with pytest.raises(InvalidResponseError, match="Level selection"):
            svc.validate_response(self.checkbox, {"selected_score": 1})

    def test_checkbox_blank_level_rejected(self):
        with pytest.raises(InvalidResponseError):
            svc.validate_response(self.checkbox, {"selected_level": "  "})

    def test_checkbox_score_must_be_binary(self):
        with pytest.raises(InvalidResponseError, match="0 or 1"):
            svc.validate_response(self.checkbox, {"selected_level": "yes", "selected_score": 2})

    def test_checkbox_without_score_is_fine(self):
        svc.validate_response(self.checkbox, {"selected_level": "yes"})

    def test_error_carries_indicator_number(self):
        with pytest.raises(InvalidResponseError) as exc:
            svc.validate_response(self.scale, {"selected_score": 9})
        assert exc.value.indicator_number == "1.1"


# ═══════════════════════════════════════════════════════════════════════════════
# B — Single responses
# ═══════════════════════════════════════════════════════════════════════════════


class TestUpsert:
    def test_rejected_update_keeps_stored_response(self, make_form, make_session, observer):
        form = make_form(scale=3)
        s = make_session(form, observer, answered=0)
        ind = _indicator(form, "1.1")

        svc.upsert_response(s.id, ind.id, {"selected_score": 2})
        with pytest.raises(InvalidResponseError):
            svc.upsert_response(s.id, ind.id, {"selected_score": 5})

        stored = IndicatorResponse.query.filter_by(session_id=s.id, indicator_id=ind.id).all()
        assert len(stored) == 1
        assert stored[0].selected_score == 2

    def test_upsert_replaces_instead_of_duplicating(self, make_form, make_session, observer):
        form = make_form(scale=2)
        s = make_session(form, observer, answered=0)
        ind = _indicator(form, "1.2")

        svc.upsert_response(s.id, ind.id, {"selected_score": 1, "notes": "first"})
        result = svc.upsert_response(s.id, ind.id, {"selected_score": 3})

        assert IndicatorResponse.query.filter_by(session_id=s.id).count() == 1
        assert result["selected_score"] == 3
        assert result["notes"] is None
        assert result["indicator_number"] == "1.2"

    def test_indicator_from_another_form(self, make_form, make_session, observer):
        form = make_form(scale=2)
        other = make_form(scale=1)
        s = make_session(form, observer, answered=0)

        with pytest.raises(ValidationError, match="not part of form"):
            svc.upsert_response(s.id, _indicator(other, "1.1").id, {"selected_score": 1})

    def test_inactive_indicator_not_found(self, make_form, make_session, observer):
        form = make_form(scale=2)
        s = make_session(form, observer, answered=0)
        ind = _indicator(form, "1.2")
        ind.is_active = False
        db.session.commit()

        with pytest.raises(NotFoundError):
            svc.upsert_response(s.id, ind.id, {"selected_score": 1})

    def test_unknown_session(self):
        with pytest.raises(NotFoundError):
            svc.upsert_response("missing", 1, {"selected_score": 1})

    @pytest.mark.parametrize("status", [STATUS_COMPLETED, STATUS_APPROVED])
    def test_locked_session_refuses_writes(self, make_form, make_session, observer, status):
        form = make_form(scale=1)
        s = make_session(form, observer, status=status, answered=0)

        with pytest.raises(SessionLockedError):
            svc.upsert_response(s.id, _indicator(form, "1.1").id, {"selected_score": 1})
        assert IndicatorResponse.query.filter_by(session_id=s.id).count() == 0

    def test_update_merges_with_stored_values(self, make_form, make_session, observer):
        form = make_form(scale=1)
        s = make_session(form, observer)
        response = IndicatorResponse.query.filter_by(session_id=s.id).one()

        result = svc.update_response(response.id, {"notes": "Good pacing"})
        assert result["selected_score"] == 2
        assert result["notes"] == "Good pacing"

    def test_update_validates_merged_result(self, make_form, make_session, observer):
        form = make_form(scale=1)
        s = make_session(form, observer)
        response = IndicatorResponse.query.filter_by(session_id=s.id).one()

        with pytest.raises(InvalidResponseError):
            svc.update_response(response.id, {"selected_score": None})
        assert db.session.get(IndicatorResponse, response.id).selected_score == 2

    def test_remove_response(self, make_form, make_session, observer):
        form = make_form(scale=2)
        s = make_session(form, observer)
        response = IndicatorResponse.query.filter_by(session_id=s.id).first()

        svc.remove_response(response.id)
        assert IndicatorResponse.query.filter_by(session_id=s.id).count() == 1

    def test_list_is_in_indicator_order(self, make_form, make_session, observer):
        form = make_form(scale=11)
        s = make_session(form, observer)
        numbers = [r["indicator_number"] for r in svc.list_responses(s.id)]
        assert numbers[:3] == ["1.1", "1.2", "1.3"]
        assert numbers[-2:] == ["1.10", "1.11"]


# ═══════════════════════════════════════════════════════════════════════════════
# C — Bulk replace
# ═══════════════════════════════════════════════════════════════════════════════


class TestBulkReplace:
    def test_replaces_every_response(self, make_form, make_session, observer):
        form = make_form(scale=3, checkbox=1)
        s = make_session(form, observer)

        result = svc.bulk_replace_responses(s.id, [
            {"indicator_id": _indicator(form, "1.1").id, "selected_score": 3},
            {"indicator_id": _indicator(form, "2.1").id, "selected_level": "no", "selected_score": 0},
        ])

        assert [r["indicator_number"] for r in result] == ["1.1", "2.1"]
        assert IndicatorResponse.query.filter_by(session_id=s.id).count() == 2

    def test_invalid_item_leaves_session_untouched(self, make_form, make_session, observer):
        form = make_form(scale=3)
        s = make_session(form, observer)

        with pytest.raises(InvalidResponseError):
            svc.bulk_replace_responses(s.id, [
                {"indicator_id": _indicator(form, "1.1").id, "selected_score": 1},
                {"indicator_id": _indicator(form, "1.2").id, "selected_score": 7},
            ])

        stored = IndicatorResponse.query.filter_by(session_id=s.id).all()
        assert len(stored) == 3
        assert {r.selected_score for r in stored} == {2}

    def test_later_item_for_same_indicator_wins(self, make_form, make_session, observer):
        form = make_form(scale=1)
        s = make_session(form, observer, answered=0)
        ind_id = _indicator(form, "1.1").id

        result = svc.bulk_replace_responses(s.id, [
            {"indicator_id": ind_id, "selected_score": 1},
            {"indicator_id": ind_id, "selected_score": 3},
        ])
        assert len(result) == 1
        assert result[0]["selected_score"] == 3

    def test_item_without_indicator_id(self, make_form, make_session, observer):
        form = make_form(scale=1)
        s = make_session(form, observer, answered=0)
        with pytest.raises(ValidationError, match="indicator_id"):
            svc.bulk_replace_responses(s.id, [{"selected_score": 1}])

    def test_empty_list_clears(self, make_form, make_session, observer):
        form = make_form(scale=2)
        s = make_session(form, observer)
        assert svc.bulk_replace_responses(s.id, []) == []

    def test_locked(self, make_form, make_session, observer):
        form = make_form(scale=1)
        s = make_session(form, observer, status=STATUS_COMPLETED)
        with pytest.raises(SessionLockedError):
            svc.bulk_replace_responses(s.id, [])


# ═══════════════════════════════════════════════════════════════════════════════
# D — Completion
# ═══════════════════════════════════════════════════════════════════════════════


class TestCompletion:
    def test_seven_of_ten(self, make_form, make_session, observer):
        form = make_form(scale=10)
        s = make_session(form, observer, answered=7)

        result = svc.get_completion(s.id)
        assert result["total_indicators"] == 10
        assert result["completed_responses"] == 7
        assert result["completion_percentage"] == 70
        assert result["missing_indicators"] == ["1.8", "1.9", "1.10"]

    def test_rounds_half_up(self, make_form, make_session, observer):
        form = make_form(scale=8)
        s = make_session(form, observer, answered=1)
        # 12.5% rounds to 13
        assert svc.get_completion(s.id)["completion_percentage"] == 13

    def test_zero_indicators(self, make_form, make_session, observer):
        form = make_form(scale=0)
        s = make_session(form, observer)

        result = svc.get_completion(s.id)
        assert result == {
            "total_indicators": 0,
            "completed_responses": 0,
            "completion_percentage": 0,
            "missing_indicators": [],
        }

    def test_inactive_indicator_ignored(self, make_form, make_session, observer):
        form = make_form(scale=4)
        s = make_session(form, observer, answered=4)
        _indicator(form, "1.4").is_active = False
        db.session.commit()

        result = svc.get_completion(s.id)
        assert result["total_indicators"] == 3
        assert result["completed_responses"] == 3
        assert result["completion_percentage"] == 100

    def test_unknown_session(self):
        with pytest.raises(NotFoundError):
            svc.get_completion("nope")


# ═══════════════════════════════════════════════════════════════════════════════
# E — Aggregate validation
# ═══════════════════════════════════════════════════════════════════════════════


class TestValidateAll:
    def test_all_valid(self, make_form, make_session, observer):
        form = make_form(scale=2, checkbox=1)
        s = make_session(form, observer)
        assert svc.validate_all_responses(s.id) == {"is_valid": True, "errors": []}

    def test_collects_each_invalid_stored_response(self, make_form, make_session, observer):
        form = make_form(scale=2)
        s = make_session(form, observer)
        for response in IndicatorResponse.query.filter_by(session_id=s.id):
            response.selected_score = 9
        db.session.commit()

        result = svc.validate_all_responses(s.id)
        assert result["is_valid"] is False
        assert result["errors"] == [
            "Indicator 1.1: Score must be between 1 and 3",
            "Indicator 1.2: Score must be between 1 and 3",
        ]
