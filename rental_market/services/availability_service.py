from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from datetime import date

from pydantic import BaseModel, ConfigDict

from rental_market.models.rental_models import AvailabilitySlot, BookingRequest, BookingStatus
from rental_market.services.date_utils import iter_days, parse_date, ranges_overlap, rental_days
from rental_market.services.errors import InvalidRangeError, ValidationError
from rental_market.services.settlement_policy import SettlementPolicy, resolve_policy


BLOCKING_STATES = {BookingStatus.PENDING.value, BookingStatus.APPROVED.value, BookingStatus.ACTIVE.value}
AVAILABILITY_LOGGER = logging.getLogger("rental_market.availability")


class AvailabilityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    available: bool
    conflicting_dates: list[date] = []


def validate_rental_window(start_date, end_date, policy: SettlementPolicy | None = None) -> tuple[date, date]:
    policy = resolve_policy(policy)
    start = parse_date(start_date)
    end = parse_date(end_date)
    if end <= start:
        raise InvalidRangeError("Minimum rental period is 1 day")
    if rental_days(start, end) > policy.max_rental_days:
        raise ValidationError(f"Maximum rental period is {policy.max_rental_days} days")
    return start, end


def is_blocking(booking: BookingRequest) -> bool:
    return str(booking.status or "") in BLOCKING_STATES


def check_availability(
    start_date,
    end_date,
    bookings: Iterable[BookingRequest],
    slots: Iterable[AvailabilitySlot] | None = None,
    exclude_booking_id: int | None = None,
) -> AvailabilityResult:
    start = parse_date(start_date)
    end = parse_date(end_date)
    if end <= start:
        raise InvalidRangeError("End date must be after start date.")

    conflicts: set[date] = set()
    for booking in bookings:
        if exclude_booking_id is not None and booking.id == exclude_booking_id:
            continue
        if not is_blocking(booking):
            continue
        other_start = parse_date(booking.start_date)
        other_end = parse_date(booking.end_date)
        if not ranges_overlap(start, end, other_start, other_end):
            continue
        for day in iter_days(max(start, other_start), min(end, other_end)):
            conflicts.add(day)

    for slot in slots or []:
        slot_day = parse_date(slot.date)
        if slot.is_available is False and start <= slot_day < end:
            conflicts.add(slot_day)

    if conflicts:
        return AvailabilityResult(available=False, conflicting_dates=sorted(conflicts))
    return AvailabilityResult(available=True)


class AvailabilityCache:
    """Display-time availability lookups with a fixed TTL.

    Entries for an equipment item are dropped whenever a booking for it is
    written. Booking confirmation never reads from here.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[int, date, date], tuple[float, AvailabilityResult]] = {}

    def get(self, equipment_id: int, start: date, end: date) -> AvailabilityResult | None:
        key = (equipment_id, start, end)
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return result

    def put(self, equipment_id: int, start: date, end: date, result: AvailabilityResult) -> None:
        with self._lock:
            self._entries[(equipment_id, start, end)] = (self._clock() + self.ttl_seconds, result)

    def invalidate(self, equipment_id: int) -> None:
        with self._lock:
            for key in [key for key in self._entries if key[0] == equipment_id]:
                self._entries.pop(key, None)
        AVAILABILITY_LOGGER.debug("Availability cache invalidated equipment_id=%s", equipment_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


availability_cache = AvailabilityCache()
