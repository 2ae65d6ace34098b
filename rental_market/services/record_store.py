from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from rental_market.models.rental_models import (
    AvailabilitySlot,
    BookingRequest,
    BookingStatus,
    ClaimStatus,
    DamageClaim,
    DepositStatus,
    Equipment,
    Payment,
    RentalEvent,
)
from rental_market.services.availability_service import (
    BLOCKING_STATES,
    AvailabilityCache,
    AvailabilityResult,
    availability_cache,
    check_availability,
)
from rental_market.services.date_utils import utc_now
from rental_market.services.errors import ConflictError, IllegalTransitionError, RecordNotFoundError


OPEN_CLAIM_STATES = {ClaimStatus.PENDING.value, ClaimStatus.DISPUTED.value}
STORE_LOGGER = logging.getLogger("rental_market.store")


class RentalRecordStore:
    """Reads and conditional writes for the booking engine.

    Writes are flushed but never committed; the caller owns the transaction
    so a status change and its related records land together.
    """

    def __init__(self, db: Session, cache: AvailabilityCache | None = None):
        self.db = db
        self.cache = cache if cache is not None else availability_cache

    def get_equipment(self, equipment_id: int) -> Equipment:
        equipment = self.db.get(Equipment, equipment_id)
        if not equipment:
            raise RecordNotFoundError("Equipment not found")
        return equipment

    def get_booking(self, booking_id: int) -> BookingRequest:
        booking = self.db.get(BookingRequest, booking_id)
        if not booking:
            raise RecordNotFoundError("Booking request not found")
        return booking

    def get_claim(self, claim_id: int) -> DamageClaim:
        claim = self.db.get(DamageClaim, claim_id)
        if not claim:
            raise RecordNotFoundError("Damage claim not found")
        return claim

    def get_payment_for_booking(self, booking_id: int) -> Payment | None:
        return self.db.execute(
            select(Payment).where(Payment.booking_request_id == booking_id)
        ).scalars().first()

    def list_blocking_bookings(self, equipment_id: int, start: date, end: date) -> list[BookingRequest]:
        stmt = (
            select(BookingRequest)
            .where(BookingRequest.equipment_id == equipment_id)
            .where(BookingRequest.status.in_(sorted(BLOCKING_STATES)))
            .where(BookingRequest.start_date < end)
            .where(BookingRequest.end_date > start)
            .order_by(BookingRequest.start_date)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_availability_slots(self, equipment_id: int, start: date, end: date) -> list[AvailabilitySlot]:
        stmt = (
            select(AvailabilitySlot)
            .where(AvailabilitySlot.equipment_id == equipment_id)
            .where(AvailabilitySlot.date >= start)
            .where(AvailabilitySlot.date < end)
            .order_by(AvailabilitySlot.date)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_claims(self, booking_id: int) -> list[DamageClaim]:
        stmt = select(DamageClaim).where(DamageClaim.booking_id == booking_id).order_by(DamageClaim.filed_at)
        return list(self.db.execute(stmt).scalars().all())

    def has_open_claims(self, booking_id: int) -> bool:
        stmt = (
            select(DamageClaim.id)
            .where(DamageClaim.booking_id == booking_id)
            .where(DamageClaim.status.in_(sorted(OPEN_CLAIM_STATES)))
        )
        return self.db.execute(stmt).first() is not None

    def list_unanswered_claims(self, filed_before: datetime) -> list[DamageClaim]:
        stmt = (
            select(DamageClaim)
            .where(DamageClaim.status == ClaimStatus.PENDING.value)
            .where(DamageClaim.renter_response.is_(None))
            .where(DamageClaim.filed_at <= filed_before)
            .order_by(DamageClaim.filed_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_releasable_deposits(
        self,
        now: datetime,
        default_window_hours: int,
        limit: int = 50,
    ) -> list[tuple[Payment, BookingRequest]]:
        """Held deposits of completed bookings past their release window with no open claims.

        The window is the equipment's ``deposit_refund_timeline_hours`` when set,
        otherwise ``default_window_hours``. Both filters run in SQL so the limit
        only ever counts releasable rows.
        """
        timeline = Equipment.deposit_refund_timeline_hours
        windows = [
            and_(
                or_(timeline.is_(None), timeline <= 0),
                BookingRequest.completed_at < now - timedelta(hours=int(default_window_hours)),
            )
        ]
        override_hours = self.db.execute(select(timeline).where(timeline > 0).distinct()).scalars().all()
        for hours in override_hours:
            windows.append(and_(timeline == hours, BookingRequest.completed_at < now - timedelta(hours=int(hours))))

        open_claim = (
            select(DamageClaim.id)
            .where(DamageClaim.booking_id == BookingRequest.id)
            .where(DamageClaim.status.in_(sorted(OPEN_CLAIM_STATES)))
            .exists()
        )
        stmt = (
            select(Payment, BookingRequest)
            .join(BookingRequest, BookingRequest.id == Payment.booking_request_id)
            .join(Equipment, Equipment.id == BookingRequest.equipment_id)
            .where(Payment.deposit_status == DepositStatus.HELD.value)
            .where(Payment.deposit_amount > 0)
            .where(BookingRequest.status == BookingStatus.COMPLETED.value)
            .where(BookingRequest.completed_at.is_not(None))
            .where(or_(*windows))
            .where(~open_claim)
            .order_by(BookingRequest.completed_at)
            .limit(max(1, int(limit)))
        )
        return [(payment, booking) for payment, booking in self.db.execute(stmt).all()]

    def lock_equipment(self, equipment_id: int) -> None:
        # Row lock serialises check-then-write per equipment item on databases that support it.
        found = self.db.execute(
            select(Equipment.id).where(Equipment.id == equipment_id).with_for_update()
        ).first()
        if not found:
            raise RecordNotFoundError("Equipment not found")

    def ensure_available(
        self,
        equipment_id: int,
        start: date,
        end: date,
        exclude_booking_id: int | None = None,
    ) -> AvailabilityResult:
        self.lock_equipment(equipment_id)
        result = check_availability(
            start,
            end,
            self.list_blocking_bookings(equipment_id, start, end),
            self.list_availability_slots(equipment_id, start, end),
            exclude_booking_id=exclude_booking_id,
        )
        if not result.available:
            STORE_LOGGER.warning(
                "Availability conflict equipment_id=%s start=%s end=%s dates=%s", equipment_id, start, end, result.conflicting_dates
            )
            raise ConflictError("Selected dates overlap with existing bookings", result.conflicting_dates)
        return result

    def insert_booking_if_available(self, booking: BookingRequest) -> BookingRequest:
        self.ensure_available(booking.equipment_id, booking.start_date, booking.end_date)
        self.db.add(booking)
        self.db.flush()
        self.cache.invalidate(booking.equipment_id)
        return booking

    def add_payment(self, payment: Payment) -> Payment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def add_claim(self, claim: DamageClaim) -> DamageClaim:
        self.db.add(claim)
        self.db.flush()
        return claim

    def compare_and_set_booking_status(
        self,
        booking: BookingRequest,
        expected_status: str,
        target_status: str,
        **fields,
    ) -> BookingRequest:
        values = {
            "status": target_status,
            "version": int(booking.version or 1) + 1,
            "updated_at": fields.pop("updated_at", None) or utc_now(),
            **fields,
        }
        result = self.db.execute(
            update(BookingRequest)
            .where(BookingRequest.id == booking.id)
            .where(BookingRequest.status == expected_status)
            .where(BookingRequest.version == int(booking.version or 1))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            STORE_LOGGER.warning(
                "Booking write lost race booking_id=%s expected=%s target=%s", booking.id, expected_status, target_status
            )
            self.db.refresh(booking)
            raise IllegalTransitionError(str(booking.status), target_status, "Booking was modified by another request.")
        self.db.refresh(booking)
        self.cache.invalidate(booking.equipment_id)
        return booking

    def compare_and_set_claim(
        self,
        claim: DamageClaim,
        expected_status: str,
        target_status: str,
        **fields,
    ) -> DamageClaim:
        values = {
            "status": target_status,
            "version": int(claim.version or 1) + 1,
            "updated_at": fields.pop("updated_at", None) or utc_now(),
            **fields,
        }
        result = self.db.execute(
            update(DamageClaim)
            .where(DamageClaim.id == claim.id)
            .where(DamageClaim.status == expected_status)
            .where(DamageClaim.version == int(claim.version or 1))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            STORE_LOGGER.warning(
                "Claim write lost race claim_id=%s expected=%s target=%s", claim.id, expected_status, target_status
            )
            self.db.refresh(claim)
            raise IllegalTransitionError(str(claim.status), target_status, "Claim was modified by another request.")
        self.db.refresh(claim)
        return claim

    def compare_and_set_deposit_status(
        self,
        payment: Payment,
        expected_status: str,
        target_status: str,
        expected_claimed_amount=None,
        **fields,
    ) -> Payment:
        values = {
            "deposit_status": target_status,
            "updated_at": fields.pop("updated_at", None) or utc_now(),
            **fields,
        }
        stmt = (
            update(Payment)
            .where(Payment.id == payment.id)
            .where(Payment.deposit_status == expected_status)
        )
        if expected_claimed_amount is not None:
            stmt = stmt.where(Payment.deposit_claimed_amount == expected_claimed_amount)
        result = self.db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount != 1:
            STORE_LOGGER.warning(
                "Deposit write lost race payment_id=%s expected=%s target=%s", payment.id, expected_status, target_status
            )
            self.db.refresh(payment)
            raise IllegalTransitionError(str(payment.deposit_status), target_status, "Deposit was modified by another request.")
        self.db.refresh(payment)
        return payment

    def record_event(
        self,
        booking_id: int,
        event_type: str,
        event_data: dict | None = None,
        created_by: str | None = None,
        created_at: datetime | None = None,
    ) -> RentalEvent:
        event = RentalEvent(
            booking_id=booking_id,
            event_type=event_type,
            event_data=json.dumps(event_data or {}, default=str),
            created_by=created_by,
            created_at=created_at or utc_now(),
        )
        self.db.add(event)
        self.db.flush()
        return event
