"""
Audit trail — append-only signature and approval streams, merged at read time.

Writers:
    append_event(event)            dispatch on ``action`` to the right stream
    log_signature_event(...)       typed writer for signature_* actions
    log_approval_event(...)        typed writer for approve/reject/...

Readers (every reader merges both streams by timestamp):
    get_session_timeline           chronological, oldest first
    get_session_audit_trail        listing order, latest first
    search_audit_trail             AND of the supplied predicates
    get_audit_report               counts plus a timeline with gaps
    validate_audit_integrity       duplicate and sequencing anomalies

Rows are never updated or deleted; there is no code path here that does so.
"""

import csv
import io
import logging
from collections import Counter
from datetime import datetime, timezone

from observation_platform.core.exceptions import InvalidRequestError
from observation_platform.models import db
from observation_platform.models.audit import (
    ACTION_APPROVE,
    ACTION_REJECT,
    APPROVAL_ACTIONS,
    SIGNATURE_ACTIONS,
    SIGNATURE_CREATED,
    ApprovalAuditEvent,
    SignatureAuditEvent,
    write_approval_event,
    write_signature_event,
)
from observation_platform.utils.helpers import as_utc

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = 10

CSV_COLUMNS = ["Timestamp", "Session ID", "Action", "User ID", "User Role", "Comments", "Metadata"]

# SQLite hands back naive datetimes; everything stored is UTC.
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _event_key(event) -> datetime:
    return as_utc(event.timestamp) or _EPOCH


def _merge(signature_events, approval_events, *, latest_first: bool) -> list:
    # sorted() is stable: equal timestamps keep signature-before-approval order.
    return sorted(
        [*signature_events, *approval_events], key=_event_key, reverse=latest_first,
    )


# ── Writers ──────────────────────────────────────────────────────────────────


def log_signature_event(
    session_id: str,
    action: str,
    actor_id,
    actor_role: str | None = None,
    *,
    signature_id: int | None = None,
    metadata=None,
    timestamp: datetime | None = None,
) -> dict:
    """Append to the signature stream and commit."""
    if action not in SIGNATURE_ACTIONS:
        raise InvalidRequestError(f"'{action}' is not a signature audit action")
    event = write_signature_event(
        session_id=session_id, action=action, actor_id=actor_id,
        actor_role=actor_role, signature_id=signature_id,
        metadata=metadata, timestamp=timestamp,
    )
    db.session.commit()
    return event.to_dict()


def log_approval_event(
    session_id: str,
    action: str,
    actor_id,
    actor_role: str | None = None,
    *,
    comments: str | None = None,
    metadata=None,
    timestamp: datetime | None = None,
) -> dict:
    """Append to the approval stream and commit."""
    if action not in APPROVAL_ACTIONS:
        raise InvalidRequestError(f"'{action}' is not an approval audit action")
    event = write_approval_event(
        session_id=session_id, action=action, actor_id=actor_id,
        actor_role=actor_role, comments=comments,
        metadata=metadata, timestamp=timestamp,
    )
    db.session.commit()
    return event.to_dict()


def append_event(event: dict) -> dict:
    """
    Store one audit event verbatim on the stream its action belongs to.

    ``event`` keys: session_id, action, actor_id, actor_role, comments,
    signature_id, metadata, timestamp (optional, server time when absent).
    """
    action = event.get("action")
    common = {
        "session_id": event.get("session_id"),
        "action": action,
        "actor_id": event.get("actor_id"),
        "actor_role": event.get("actor_role"),
        "metadata": event.get("metadata"),
        "timestamp": event.get("timestamp"),
    }
    if not common["session_id"] or common["actor_id"] is None:
        raise InvalidRequestError("Audit events need session_id and actor_id")

    if action in SIGNATURE_ACTIONS:
        return log_signature_event(signature_id=event.get("signature_id"), **common)
    if action in APPROVAL_ACTIONS:
        return log_approval_event(comments=event.get("comments"), **common)
    raise InvalidRequestError(f"Unknown audit action '{action}'")


# ── Session readers ──────────────────────────────────────────────────────────


def _session_events(session_id: str, *, latest_first: bool) -> list:
    signature_events = SignatureAuditEvent.query.filter_by(session_id=str(session_id)).all()
    approval_events = ApprovalAuditEvent.query.filter_by(session_id=str(session_id)).all()
    return _merge(signature_events, approval_events, latest_first=latest_first)


def get_session_timeline(session_id: str) -> list[dict]:
    """Both streams for one session, oldest first."""
    return [e.to_dict() for e in _session_events(session_id, latest_first=False)]


def get_session_audit_trail(session_id: str) -> list[dict]:
    """Both streams for one session, latest first."""
    return [e.to_dict() for e in _session_events(session_id, latest_first=True)]


def get_approval_history(session_id: str) -> list[dict]:
    events = ApprovalAuditEvent.query.filter_by(session_id=str(session_id)).all()
    return [e.to_dict() for e in sorted(events, key=_event_key, reverse=True)]


def get_signature_audit_trail(signature_id: int) -> list[dict]:
    events = SignatureAuditEvent.query.filter_by(signature_id=signature_id).all()
    return [e.to_dict() for e in sorted(events, key=_event_key, reverse=True)]


def get_user_audit_trail(actor_id) -> list[dict]:
    return search_audit_trail(actor_id=actor_id)


# ── Search & reporting ───────────────────────────────────────────────────────


def search_audit_trail(
    session_id: str | None = None,
    actor_id=None,
    action: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[dict]:
    """
    AND-combination of every supplied predicate, latest first.

    Absent criteria match everything. Date bounds are inclusive and are
    compared in UTC; naive bounds are taken to be UTC.
    """
    results = {}
    for model in (SignatureAuditEvent, ApprovalAuditEvent):
        q = model.query
        if session_id:
            q = q.filter(model.session_id == str(session_id))
        if actor_id is not None:
            q = q.filter(model.actor_id == str(actor_id))
        if action:
            q = q.filter(model.action == action)
        if date_from is not None:
            q = q.filter(model.timestamp >= as_utc(date_from))
        if date_to is not None:
            q = q.filter(model.timestamp <= as_utc(date_to))
        results[model] = q.all()

    merged = _merge(results[SignatureAuditEvent], results[ApprovalAuditEvent], latest_first=True)
    return [e.to_dict() for e in merged]


def get_audit_report(session_id: str) -> dict:
    """
    Summary of one session's history.

    Each timeline entry carries ``minutes_since_previous``; the first is 0.
    """
    events = _session_events(session_id, latest_first=False)

    timeline = []
    previous = None
    for event in events:
        entry = event.to_dict()
        current = _event_key(event)
        gap = 0.0 if previous is None else (current - previous).total_seconds() / 60
        entry["minutes_since_previous"] = round(gap, 2)
        timeline.append(entry)
        previous = current

    return {
        "session_id": str(session_id),
        "total_events": len(events),
        "signature_event_count": sum(1 for e in events if isinstance(e, SignatureAuditEvent)),
        "approval_event_count": sum(1 for e in events if isinstance(e, ApprovalAuditEvent)),
        "unique_actor_count": len({e.actor_id for e in events}),
        "timeline": timeline,
    }


def get_audit_statistics() -> dict:
    signature_events = SignatureAuditEvent.query.all()
    approval_events = ApprovalAuditEvent.query.all()
    merged = _merge(signature_events, approval_events, latest_first=True)

    return {
        "total_events": len(merged),
        "signature_events": len(signature_events),
        "approval_events": len(approval_events),
        "events_by_action": dict(Counter(e.action for e in merged)),
        "events_by_actor": dict(Counter(e.actor_id for e in merged)),
        "recent_activity": [e.to_dict() for e in merged[:RECENT_ACTIVITY_LIMIT]],
    }


def validate_audit_integrity() -> dict:
    """
    Surface anomalies across the whole audit store; never repairs anything.

    Flags:
      - duplicate events (same session, action and timestamp)
      - ``signature_created`` recorded after an approve/reject of the same session
    """
    events = _merge(
        SignatureAuditEvent.query.all(), ApprovalAuditEvent.query.all(), latest_first=False,
    )
    issues = []

    seen = Counter((e.session_id, e.action, _event_key(e)) for e in events)
    for (session_id, action, ts), count in seen.items():
        if count > 1:
            issues.append(
                f"Duplicate event: session {session_id} action '{action}' "
                f"at {ts.isoformat()} recorded {count} times"
            )

    first_decision: dict[str, datetime] = {}
    for event in events:
        if event.action in (ACTION_APPROVE, ACTION_REJECT):
            first_decision.setdefault(event.session_id, _event_key(event))

    for event in events:
        decided_at = first_decision.get(event.session_id)
        if event.action == SIGNATURE_CREATED and decided_at and _event_key(event) > decided_at:
            issues.append(
                f"Sequencing anomaly: signature created at {_event_key(event).isoformat()} "
                f"after approval decision on session {event.session_id}"
            )

    if issues:
        logger.warning("Audit integrity issues found", extra={"action": "integrity_check"})
    return {"is_valid": not issues, "issues": issues, "total_events": len(events)}


def export_audit_csv(session_id: str | None = None) -> str:
    events = (
        _session_events(session_id, latest_first=True)
        if session_id
        else _merge(SignatureAuditEvent.query.all(), ApprovalAuditEvent.query.all(), latest_first=True)
    )
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_COLUMNS)
    for e in events:
        writer.writerow([
            _event_key(e).isoformat(),
            e.session_id,
            e.action,
            e.actor_id,
            e.actor_role or "",
            getattr(e, "comments", None) or "",
            e.metadata_json or "",
        ])
    return buf.getvalue()
