"""
Indicator responses — rubric validation and session completion.

Rules per rubric type:
  - scale:    ``selected_score`` required, 1 <= score <= ``max_score``
  - checkbox: ``selected_level`` required; ``selected_score`` optional but
              must be 0 or 1 when present

Writes are refused with SessionLockedError once the session is completed
or approved.  Bulk replacement validates the whole batch before touching
storage, then clears and re-inserts inside one transaction.

Usage:
    from observation_platform.services.indicator_responses import upsert_response, get_completion

    upsert_response(session_id, indicator_id, {"selected_score": 2})
    get_completion(session_id)["completion_percentage"]
"""

import logging
import math

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
    Indicator,
    IndicatorResponse,
    ObservationSession,
    indicator_sort_key,
)

logger = logging.getLogger(__name__)

RESPONSE_FIELDS = ("selected_score", "selected_level", "notes")


# ── Lookups ──────────────────────────────────────────────────────────────────


def _get_session(session_id: str) -> ObservationSession:
    session = db.session.get(ObservationSession, session_id)
    if not session:
        raise NotFoundError(resource="ObservationSession", resource_id=session_id)
    return session


def _ensure_unlocked(session: ObservationSession, operation: str) -> None:
    if not session.is_editable:
        raise SessionLockedError(session.id, session.status, operation=operation)


def _get_indicator(session: ObservationSession, indicator_id) -> Indicator:
    indicator = db.session.get(Indicator, indicator_id) if indicator_id is not None else None
    if not indicator or not indicator.is_active:
        raise NotFoundError(resource="Indicator", resource_id=indicator_id)
    if indicator.id not in {i.id for i in session.form.active_indicators()}:
        raise ValidationError(
            f"Indicator {indicator.indicator_number} is not part of form {session.form.code}",
            details={"indicator_id": indicator.id, "form_id": session.form_id},
        )
    return indicator


# ── Pure validation ──────────────────────────────────────────────────────────


def validate_response(indicator: Indicator, data: dict) -> None:
    """
    Check one candidate response against its indicator's rubric.

    Raises:
        InvalidResponseError: with a message that does not repeat the
            indicator number (callers add the prefix when aggregating).
    """
    number = indicator.indicator_number
    score = data.get("selected_score")
    level = data.get("selected_level")

    if score is not None and (isinstance(score, bool) or not isinstance(score, int)):
        raise InvalidResponseError(number, "Score must be an integer")

    if indicator.rubric_type == RUBRIC_SCALE:
        if score is None:
            raise InvalidResponseError(number, "Score is required for scale indicators")
        if score < 1 or (indicator.max_score is not None and score > indicator.max_score):
            raise InvalidResponseError(
                number, f"Score must be between 1 and {indicator.max_score}",
            )
    elif indicator.rubric_type == RUBRIC_CHECKBOX:
        if level is None or (isinstance(level, str) and not level.strip()):
            raise InvalidResponseError(
                number, "Level selection is required for checkbox indicators",
            )
        if score is not None and score not in (0, 1):
            raise InvalidResponseError(number, "Checkbox score must be 0 or 1")
    else:
        raise InvalidResponseError(number, f"Unknown rubric type '{indicator.rubric_type}'")


def _response_values(response: IndicatorResponse) -> dict:
    return {field: getattr(response, field) for field in RESPONSE_FIELDS}


# ── Single-response writes ───────────────────────────────────────────────────


def upsert_response(session_id: str, indicator_id: int, data: dict) -> dict:
    """
    Create or replace the single response for (session, indicator).

    Validation runs before any mutation, so a rejected update leaves the
    stored response untouched.
    """
    session = _get_session(session_id)
    _ensure_unlocked(session, "update responses on")
    indicator = _get_indicator(session, indicator_id)
    validate_response(indicator, data)

    response = IndicatorResponse.query.filter_by(
        session_id=session.id, indicator_id=indicator.id,
    ).first()
    if response is None:
        response = IndicatorResponse(session_id=session.id, indicator_id=indicator.id)
        db.session.add(response)
    for field in RESPONSE_FIELDS:
        setattr(response, field, data.get(field))

    db.session.commit()
    return response.to_dict()


def get_response(response_id: int) -> dict:
    response = db.session.get(IndicatorResponse, response_id)
    if not response:
        raise NotFoundError(resource="IndicatorResponse", resource_id=response_id)
    return response.to_dict()


def update_response(response_id: int, data: dict) -> dict:
    """Merge ``data`` over the stored values, validate the result, then save."""
    response = db.session.get(IndicatorResponse, response_id)
    if not response:
        raise NotFoundError(resource="IndicatorResponse", resource_id=response_id)
    _ensure_unlocked(response.session, "update responses on")

    merged = _response_values(response)
    merged.update({k: v for k, v in data.items() if k in RESPONSE_FIELDS})
    validate_response(response.indicator, merged)

    for field, value in merged.items():
        setattr(response, field, value)
    db.session.commit()
    return response.to_dict()


def remove_response(response_id: int) -> None:
    response = db.session.get(IndicatorResponse, response_id)
    if not response:
        raise NotFoundError(resource="IndicatorResponse", resource_id=response_id)
    _ensure_unlocked(response.session, "remove responses from")
    db.session.delete(response)
    db.session.commit()


def list_responses(session_id: str) -> list[dict]:
    session = _get_session(session_id)
    ordered = sorted(
        session.responses,
        key=lambda r: indicator_sort_key(r.indicator.indicator_number),
    )
    return [r.to_dict() for r in ordered]


# ── Bulk replace ─────────────────────────────────────────────────────────────


def prepare_batch(session: ObservationSession, responses: list[dict]) -> list[tuple[Indicator, dict]]:
    """
    Resolve and validate every item of a bulk payload without writing.

    Later items for the same indicator win, matching input-order upserts.
    """
    if not isinstance(responses, list):
        raise ValidationError("indicator_responses must be a list")

    resolved: dict[int, tuple[Indicator, dict]] = {}
    for position, item in enumerate(responses):
        if not isinstance(item, dict) or item.get("indicator_id") is None:
            raise ValidationError(
                "Each response needs an indicator_id",
                details={"position": position},
            )
        indicator = _get_indicator(session, item["indicator_id"])
        validate_response(indicator, item)
        resolved.pop(indicator.id, None)
        resolved[indicator.id] = (indicator, item)
    return list(resolved.values())


def apply_batch(session: ObservationSession, batch: list[tuple[Indicator, dict]]) -> None:
    """Clear the session's responses and insert ``batch``. Flushes, never commits."""
    session.responses.clear()
    # Deletes must reach the database before the inserts hit the
    # (session_id, indicator_id) unique constraint.
    db.session.flush()
    for indicator, item in batch:
        session.responses.append(IndicatorResponse(
            indicator_id=indicator.id,
            **{field: item.get(field) for field in RESPONSE_FIELDS},
        ))
    db.session.flush()


def bulk_replace_responses(session_id: str, responses: list[dict]) -> list[dict]:
    """
    Replace every response of a session in one transaction.

    The batch is validated up front; a storage failure mid-way rolls the
    whole replacement back, so the session never ends up half-cleared.
    """
    session = _get_session(session_id)
    _ensure_unlocked(session, "update responses on")
    batch = prepare_batch(session, responses)

    try:
        apply_batch(session, batch)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Indicator responses replaced",
        extra={"session_id": session.id, "action": "bulk_replace"},
    )
    return list_responses(session.id)


# ── Completion & aggregate validation ────────────────────────────────────────


def compute_completion(session: ObservationSession) -> dict:
    active = session.form.active_indicators()
    active_ids = {i.id for i in active}
    answered = {r.indicator_id for r in session.responses if r.indicator_id in active_ids}

    total = len(active)
    completed = len(answered)
    percentage = math.floor(100 * completed / total + 0.5) if total else 0
    return {
        "total_indicators": total,
        "completed_responses": completed,
        "completion_percentage": percentage,
        "missing_indicators": [i.indicator_number for i in active if i.id not in answered],
    }


def get_completion(session_id: str) -> dict:
    """
    Completion of a session against its form's active indicator set.

    Responses to indicators outside the active set are ignored, so the
    percentage always lies in [0, 100]. A form with no active indicators
    reports zeros and an empty ``missing_indicators`` list.
    """
    return compute_completion(_get_session(session_id))


def check_responses(session: ObservationSession) -> dict:
    errors = []
    ordered = sorted(
        session.responses,
        key=lambda r: indicator_sort_key(r.indicator.indicator_number),
    )
    for response in ordered:
        try:
            validate_response(response.indicator, _response_values(response))
        except InvalidResponseError as exc:
            errors.append(f"Indicator {exc.indicator_number}: {exc}")
    return {"is_valid": not errors, "errors": errors}


def validate_all_responses(session_id: str) -> dict:
    """Re-validate every stored response; collects messages instead of raising."""
    return check_responses(_get_session(session_id))
