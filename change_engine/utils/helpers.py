"""Shared parsing helpers for the change-management blueprints.

parse_datetime:  lenient (returns None on bad input), used for list filters
parse_datetime_input:  strict (raises ValueError), used for request bodies
parse_bool:  query-string / JSON truthiness
"""
import logging
from datetime import date, datetime, time, timezone

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on", "y"}


def parse_datetime(value):
    """Parse an ISO date or datetime string into an aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (midnight UTC)
    - YYYY-MM-DDTHH:MM[:SS][+HH:MM|Z]
    - DD.MM.YYYY
    Naive datetimes are interpreted as UTC.
    """
    try:
        return parse_datetime_input(value)
    except ValueError:
        return None


def parse_datetime_input(value):
    """Same as parse_datetime() but raises ValueError instead of returning None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _to_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%d.%m.%Y").replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise ValueError(
            f"Invalid date {value!r}. Use ISO 8601 (YYYY-MM-DD[THH:MM:SS]) or DD.MM.YYYY."
        ) from exc


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _to_utc(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
