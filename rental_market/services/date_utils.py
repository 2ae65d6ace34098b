from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, time, timedelta, timezone

from rental_market.services.errors import ValidationError


def parse_date(value: date | datetime | str | None) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError("Date is required.")
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {raw}") from exc


def to_instant(value: date | datetime | str | None) -> datetime:
    """Return a naive UTC datetime; plain dates map to midnight."""
    if isinstance(value, str):
        raw = value.strip()
        try:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp: {raw}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise ValidationError("Timestamp is required.")


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    # Half-open: [start, end). A range ending on a day another starts does not collide.
    return start_a < end_b and start_b < end_a


def rental_days(start: date, end: date) -> int:
    return (end - start).days


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current < end:
        yield current
        current += timedelta(days=1)
