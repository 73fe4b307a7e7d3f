"""UTC calendar-date helpers shared by the scheduler and the CLI."""

import re
from datetime import date, datetime, timedelta, timezone

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def yesterday_utc(now: datetime | None = None) -> str:
    """Return yesterday's UTC date as YYYY-MM-DD."""
    now = now or datetime.now(timezone.utc)
    return (now.astimezone(timezone.utc).date() - timedelta(days=1)).isoformat()


def validate_date_format(value: str) -> bool:
    """True if value is a real calendar date in strict YYYY-MM-DD form."""
    if not value or not _DATE_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def date_range(start: str, end: str) -> list[str]:
    """Inclusive list of YYYY-MM-DD dates from start to end.

    Raises:
        ValueError: If either date is malformed or start is after end
    """
    if not validate_date_format(start) or not validate_date_format(end):
        raise ValueError("Invalid date format. Use YYYY-MM-DD")
    first = date.fromisoformat(start)
    last = date.fromisoformat(end)
    if first > last:
        raise ValueError("From date must be before or equal to to date")
    return [(first + timedelta(days=i)).isoformat() for i in range((last - first).days + 1)]
