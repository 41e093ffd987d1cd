"""UTC calendar-date helpers.

Day keys are ISO calendar dates (``YYYY-MM-DD``) computed in UTC so that
cache slots, heatmap buckets and session state agree on day boundaries.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

__all__ = [
    "utc_now",
    "today_key",
    "date_key",
    "parse_date_key",
    "start_of_day",
    "end_of_day",
    "day_range",
    "parse_timestamp",
    "format_timestamp",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def date_key(value: datetime) -> str:
    """Return the UTC calendar date of a timestamp as ``YYYY-MM-DD``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date().isoformat()


def today_key(now: Optional[datetime] = None) -> str:
    return date_key(now or utc_now())


def parse_date_key(key: str) -> date:
    return date.fromisoformat(key)


def start_of_day(key: str) -> datetime:
    return datetime.combine(parse_date_key(key), time.min, tzinfo=timezone.utc)


def end_of_day(key: str) -> datetime:
    """Last instant of the given UTC day (23:59:59.999999)."""
    return start_of_day(key) + timedelta(days=1, microseconds=-1)


def day_range(start_key: str, end_key: str) -> list[str]:
    """All date keys from start to end inclusive, ascending."""
    start = parse_date_key(start_key)
    end = parse_date_key(end_key)
    days = []
    current = start
    while current <= end:
        days.append(current.isoformat())
        current += timedelta(days=1)
    return days


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by provider APIs.

    Accepts a trailing ``Z`` and fractional seconds of any precision.
    Naive values are assumed to be UTC.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # fromisoformat only accepts up to 6 fractional digits before 3.11
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if ch.isdigit():
                digits += ch
            else:
                break
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format as ISO-8601 in UTC with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
