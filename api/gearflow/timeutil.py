# gearflow/timeutil.py
"""
Booking windows are half-open: ``[starts_at, ends_at)``.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Tuple, Union

from gearflow.errors import ValidationError

DateInput = Union[str, datetime]


def parse_datetime(value: DateInput) -> datetime:
    """Parse ISO-8601 (``Z`` suffix accepted); naive values are UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        raw = (value or "").strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date_range(starts_at: DateInput, ends_at: DateInput) -> Tuple[datetime, datetime]:
    try:
        start = parse_datetime(starts_at)
        end = parse_datetime(ends_at)
    except (AttributeError, TypeError, ValueError):
        raise ValidationError("Invalid startsAt or endsAt")
    if end <= start:
        raise ValidationError("endsAt must be later than startsAt")
    return start, end


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    # touching windows (a_end == b_start) do not overlap
    return a_start < b_end and a_end > b_start
