"""Shared parsing helpers for blueprints.

parse_date_input:      raises ValueError on bad input (caller maps to 400)
parse_datetime_input:  same contract for timestamps
"""
import logging
from datetime import date, datetime, timezone

logger = logging.getLogger(__name__)


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS (→ .date()), DD/MM/YYYY,
    date objects. Empty input returns None.
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
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(str(value), "%d/%m/%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD/MM/YYYY."
        ) from exc


def parse_datetime_input(value):
    """Parse an ISO timestamp, raising ValueError on bad input.

    Naive timestamps are interpreted as UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("Invalid datetime format. Use ISO 8601.") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
