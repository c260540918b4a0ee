"""Shared parsing helpers for request payloads and stored timestamps.

parse_date_input:     date string → date, raises ValueError on bad input
parse_time_input:     "HH:MM[:SS]" → time, raises ValueError on bad input
parse_datetime_input: ISO datetime/date → aware UTC datetime, raises ValueError
as_utc:               normalise stored timestamps (SQLite returns naive UTC)
"""
from datetime import date, datetime, time, timezone


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, DD.MM.YYYY, date objects. Empty input → None.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        try:
            return datetime.strptime(str(value), "%d.%m.%Y").date()
        except ValueError as exc:
            raise ValueError(
                "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
            ) from exc


def parse_time_input(value):
    """Parse a wall-clock time, raising ValueError on bad input. Empty input → None."""
    if not value:
        return None
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValueError("Invalid time format. Use HH:MM or HH:MM:SS.") from exc


def parse_datetime_input(value, end_of_day=False):
    """Parse an ISO datetime (or bare date) into an aware UTC datetime.

    A trailing ``Z`` is accepted; naive values are taken to be UTC. A bare
    date maps to midnight, or to the last microsecond of that day with
    ``end_of_day`` so it can serve as an inclusive upper bound.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if end_of_day and len(text) == 10:
        try:
            return datetime.combine(date.fromisoformat(text), time.max, tzinfo=timezone.utc)
        except ValueError:
            pass
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError("Invalid datetime format. Use ISO 8601.") from exc


def as_utc(value):
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
