from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from rental_market.models.rental_models import BookingRequest, BookingStatus, DepositStatus, Payment
from rental_market.services.authorization import Actor, require_owner, require_party
from rental_market.services.availability_service import validate_rental_window
from rental_market.services.date_utils import to_instant, utc_now
from rental_market.services.deposit_service import assert_deposit_transition, refund_deposit_for_cancellation, serialize_deposit
from rental_market.services.errors import (
    AuthorizationError,
    IllegalTransitionError,
    PolicyError,
    ValidationError,
)
from rental_market.services.pricing_service import calculate_booking_total, calculate_deposit_amount
from rental_market.services.record_store import RentalRecordStore
from rental_market.services.settlement_policy import SettlementPolicy, resolve_policy


TERMINAL_STATES = {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value, BookingStatus.REJECTED.value}
BOOKING_TRANSITIONS = {
    BookingStatus.PENDING.value: {BookingStatus.APPROVED.value, BookingStatus.REJECTED.value, BookingStatus.CANCELLED.value},
    BookingStatus.APPROVED.value: {BookingStatus.ACTIVE.value, BookingStatus.CANCELLED.value},
    BookingStatus.ACTIVE.value: {BookingStatus.COMPLETED.value},
    BookingStatus.COMPLETED.value: set(),
    BookingStatus.CANCELLED.value: set(),
    BookingStatus.REJECTED.value: set(),
}
BOOKING_LOGGER = logging.getLogger("rental_market.bookings")


def assert_booking_transition(current: str, target: str) -> None:
    if target not in BOOKING_TRANSITIONS.get(current, set()):
        BOOKING_LOGGER.warning("Illegal booking transition %s -> %s", current, target)
        raise IllegalTransitionError(current, target)


def _resolve_now(now) -> datetime:
    return to_instant(now) if now is not None else utc_now()


def _refuse(booking_id: int | None, reason: str) -> None:
    BOOKING_LOGGER.warning("Booking action refused booking_id=%s reason=%s", booking_id, reason)
    raise PolicyError(reason)


def _transition(
    store: RentalRecordStore,
    booking: BookingRequest,
    target: str,
    actor: Actor,
    now: datetime,
    event_type: str,
    event_data: dict | None = None,
    **fields,
) -> BookingRequest:
    current = booking.status
    store.compare_and_set_booking_status(booking, current, target, updated_at=now, **fields)
    store.record_event(booking.id, event_type, event_data, created_by=actor.party_id, created_at=now)
    BOOKING_LOGGER.info(
        "Booking transition booking_id=%s %s -> %s by=%s role=%s", booking.id, current, target, actor.party_id, actor.role
    )
    return booking


def create_booking_request(
    store: RentalRecordStore,
    equipment_id: int,
    actor: Actor,
    start_date,
    end_date,
    message: str | None = None,
    insurance_type: str = "none",
    now=None,
    policy: SettlementPolicy | None = None,
) -> BookingRequest:
    policy = resolve_policy(policy)
    now = _resolve_now(now)
    equipment = store.get_equipment(equipment_id)
    if actor.role != "renter":
        BOOKING_LOGGER.warning("Booking request denied party_id=%s role=%s", actor.party_id, actor.role)
        raise AuthorizationError("Only renters can request bookings.")
    if actor.party_id == str(equipment.owner_id):
        BOOKING_LOGGER.warning("Owner booking own equipment refused equipment_id=%s party_id=%s", equipment.id, actor.party_id)
        raise AuthorizationError("Owners cannot book their own equipment.")
    if equipment.is_available is False:
        _refuse(None, "Equipment is not accepting bookings")

    start, end = validate_rental_window(start_date, end_date, policy)
    if start < now.date():
        raise ValidationError("Start date cannot be in the past.")

    slots = store.list_availability_slots(equipment.id, start, end)
    quote = calculate_booking_total(equipment.daily_rate, start, end, slots, insurance_type=insurance_type, policy=policy)
    deposit_amount = calculate_deposit_amount(equipment)

    booking = BookingRequest(
        equipment_id=equipment.id,
        renter_id=actor.party_id,
        start_date=start,
        end_date=end,
        subtotal=quote.subtotal,
        fees=quote.fees,
        total_amount=quote.total,
        insurance_type=quote.insurance_type,
        insurance_cost=quote.insurance_cost,
        damage_deposit_amount=deposit_amount,
        status=BookingStatus.PENDING.value,
        message=(message or "").strip() or None,
        version=1,
        created_at=now,
        updated_at=now,
    )
    store.insert_booking_if_available(booking)

    deposit_status = DepositStatus.NONE.value
    if deposit_amount > 0:
        assert_deposit_transition(deposit_status, DepositStatus.HELD.value)
        deposit_status = DepositStatus.HELD.value
    store.add_payment(
        Payment(
            booking_request_id=booking.id,
            rental_amount=quote.subtotal,
            insurance_amount=quote.insurance_cost,
            deposit_amount=deposit_amount,
            deposit_status=deposit_status,
            deposit_claimed_amount=Decimal("0.00"),
            created_at=now,
            updated_at=now,
        )
    )
    store.record_event(
        booking.id,
        "booking_requested",
        {"startDate": start, "endDate": end, "total": quote.total, "deposit": deposit_amount},
        created_by=actor.party_id,
        created_at=now,
    )
    BOOKING_LOGGER.info(
        "Booking requested booking_id=%s equipment_id=%s renter=%s total=%s", booking.id, equipment.id, actor.party_id, quote.total
    )
    return booking


def approve_booking(store: RentalRecordStore, booking_id: int, actor: Actor, now=None) -> BookingRequest:
    now = _resolve_now(now)
    booking = store.get_booking(booking_id)
    require_owner(actor, store.get_equipment(booking.equipment_id), "approve this booking")
    assert_booking_transition(booking.status, BookingStatus.APPROVED.value)
    # Stale requests are refused if the range was taken or blocked since they were filed.
    store.ensure_available(booking.equipment_id, booking.start_date, booking.end_date, exclude_booking_id=booking.id)
    return _transition(store, booking, BookingStatus.APPROVED.value, actor, now, "booking_approved", approved_at=now)


def reject_booking(
    store: RentalRecordStore,
    booking_id: int,
    actor: Actor,
    reason: str | None = None,
    now=None,
) -> BookingRequest:
    now = _resolve_now(now)
    booking = store.get_booking(booking_id)
    require_owner(actor, store.get_equipment(booking.equipment_id), "reject this booking")
    assert_booking_transition(booking.status, BookingStatus.REJECTED.value)
    _transition(store, booking, BookingStatus.REJECTED.value, actor, now, "booking_rejected", {"reason": reason})
    refund_deposit_for_cancellation(store, booking, actor, now)
    return booking


def cancel_booking(
    store: RentalRecordStore,
    booking_id: int,
    actor: Actor,
    reason: str | None = None,
    now=None,
) -> BookingRequest:
    now = _resolve_now(now)
    booking = store.get_booking(booking_id)
    require_party(actor, booking, store.get_equipment(booking.equipment_id), "cancel this booking")
    assert_booking_transition(booking.status, BookingStatus.CANCELLED.value)
    if now.date() >= booking.start_date:
        _refuse(booking.id, "Cancellation is only allowed before the rental start date")
    _transition(
        store,
        booking,
        BookingStatus.CANCELLED.value,
        actor,
        now,
        "booking_cancelled",
        {"reason": reason, "role": actor.role},
        cancelled_at=now,
    )
    refund_deposit_for_cancellation(store, booking, actor, now)
    return booking


def activate_booking(
    store: RentalRecordStore,
    booking_id: int,
    actor: Actor,
    pickup_inspection_completed: bool,
    now=None,
) -> BookingRequest:
    now = _resolve_now(now)
    booking = store.get_booking(booking_id)
    require_party(actor, booking, store.get_equipment(booking.equipment_id), "start this rental")
    assert_booking_transition(booking.status, BookingStatus.ACTIVE.value)
    if not pickup_inspection_completed:
        _refuse(booking.id, "Pickup inspection not completed")
    return _transition(
        store, booking, BookingStatus.ACTIVE.value, actor, now, "rental_started", {"activatedAt": now}, activated_at=now
    )


def complete_booking(
    store: RentalRecordStore,
    booking_id: int,
    actor: Actor,
    return_inspection_completed: bool,
    now=None,
) -> BookingRequest:
    now = _resolve_now(now)
    booking = store.get_booking(booking_id)
    require_party(actor, booking, store.get_equipment(booking.equipment_id), "complete this rental")
    assert_booking_transition(booking.status, BookingStatus.COMPLETED.value)
    if not return_inspection_completed:
        _refuse(booking.id, "Return inspection not completed")
    return _transition(
        store, booking, BookingStatus.COMPLETED.value, actor, now, "rental_completed", {"completedAt": now}, completed_at=now
    )


def serialize_booking(booking: BookingRequest) -> dict:
    payment = booking.payment
    return {
        "bookingID": booking.id,
        "equipmentID": booking.equipment_id,
        "renterID": booking.renter_id,
        "startDate": booking.start_date,
        "endDate": booking.end_date,
        "subtotal": booking.subtotal,
        "fees": booking.fees,
        "totalAmount": booking.total_amount,
        "insuranceType": booking.insurance_type,
        "insuranceCost": booking.insurance_cost,
        "damageDepositAmount": booking.damage_deposit_amount,
        "status": booking.status,
        "message": booking.message,
        "version": booking.version,
        "approvedAt": booking.approved_at,
        "activatedAt": booking.activated_at,
        "completedAt": booking.completed_at,
        "cancelledAt": booking.cancelled_at,
        "createdAt": booking.created_at,
        "updatedAt": booking.updated_at,
        "isTerminal": booking.status in TERMINAL_STATES,
        "deposit": serialize_deposit(payment) if payment else None,
    }
