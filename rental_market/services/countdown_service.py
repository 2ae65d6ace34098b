from __future__ import annotations

import math
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict

from rental_market.services.date_utils import to_instant, utc_now
from rental_market.services.errors import InvalidRangeError


DAY = timedelta(days=1)
HOUR = timedelta(hours=1)
MINUTE = timedelta(minutes=1)


class RentalCountdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_days: int
    days_remaining: int
    hours_remaining: int
    minutes_remaining: int
    progress_percentage: int
    is_overdue: bool
    end_date: datetime


def calculate_rental_countdown(start_date, end_date, now=None) -> RentalCountdown:
    """Time state of a rental window at ``now``.

    Always derived from the two endpoints and the current instant, so it can be
    called on any schedule without carrying state between calls.
    """
    start = to_instant(start_date)
    end = to_instant(end_date)
    current = to_instant(now) if now is not None else utc_now()
    if end <= start:
        raise InvalidRangeError("End date must be after start date.")

    total = end - start
    remaining = max(end - current, timedelta(0))
    if current <= start:
        progress = 0
    else:
        ratio = (current - start) / total
        progress = min(100, max(0, math.floor(ratio * 100 + 0.5)))

    days_remaining, rest = divmod(remaining, DAY)
    hours_remaining, rest = divmod(rest, HOUR)
    minutes_remaining = rest // MINUTE

    return RentalCountdown(
        total_days=math.ceil(total / DAY),
        days_remaining=days_remaining,
        hours_remaining=hours_remaining,
        minutes_remaining=minutes_remaining,
        progress_percentage=progress,
        is_overdue=current > end,
        end_date=end,
    )


def countdown_urgency(countdown: RentalCountdown) -> str:
    if countdown.is_overdue:
        return "critical"
    if countdown.progress_percentage >= 90:
        return "high"
    if countdown.progress_percentage >= 75:
        return "medium"
    return "normal"


def format_rental_countdown(countdown: RentalCountdown) -> str:
    if countdown.is_overdue:
        return "Overdue - return required"
    if countdown.days_remaining > 0:
        hours = f", {countdown.hours_remaining}h" if countdown.hours_remaining > 0 else ""
        plural = "s" if countdown.days_remaining != 1 else ""
        return f"{countdown.days_remaining} day{plural}{hours}"
    if countdown.hours_remaining > 0:
        return f"{countdown.hours_remaining}h {countdown.minutes_remaining}m"
    return f"{countdown.minutes_remaining} minutes"


def serialize_countdown(countdown: RentalCountdown) -> dict:
    return {
        "totalDays": countdown.total_days,
        "daysRemaining": countdown.days_remaining,
        "hoursRemaining": countdown.hours_remaining,
        "minutesRemaining": countdown.minutes_remaining,
        "progressPercentage": countdown.progress_percentage,
        "isOverdue": countdown.is_overdue,
        "endDate": countdown.end_date,
        "urgency": countdown_urgency(countdown),
        "label": format_rental_countdown(countdown),
    }
