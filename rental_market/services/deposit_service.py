from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from rental_market.models.rental_models import BookingRequest, BookingStatus, DepositStatus, Payment
from rental_market.services.authorization import Actor, SYSTEM_ACTOR, require_party
from rental_market.services.date_utils import to_instant, utc_now
from rental_market.services.errors import IllegalTransitionError, PolicyError
from rental_market.services.pricing_service import require_non_negative, to_money
from rental_market.services.record_store import RentalRecordStore
from rental_market.services.settlement_policy import SettlementPolicy, resolve_policy


DEPOSIT_TRANSITIONS = {
    DepositStatus.NONE.value: {DepositStatus.HELD.value},
    DepositStatus.HELD.value: {DepositStatus.RELEASED.value, DepositStatus.CLAIMED.value, DepositStatus.REFUNDED.value},
    DepositStatus.RELEASED.value: set(),
    DepositStatus.CLAIMED.value: set(),
    DepositStatus.REFUNDED.value: set(),
}
DEPOSIT_LOGGER = logging.getLogger("rental_market.deposits")


class DepositReleaseCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_release: bool
    reason: str | None = None


def assert_deposit_transition(current: str | None, target: str) -> None:
    current = current or DepositStatus.NONE.value
    if target not in DEPOSIT_TRANSITIONS.get(current, set()):
        DEPOSIT_LOGGER.warning("Illegal deposit transition %s -> %s", current, target)
        raise IllegalTransitionError(current, target)


def can_release_deposit(
    payment: Payment | None,
    return_inspection_completed: bool,
    has_pending_claims: bool,
) -> DepositReleaseCheck:
    # Checks run in a fixed order so the first unmet condition is the reported reason.
    if payment is None or not payment.deposit_amount or to_money(payment.deposit_amount) <= 0:
        return DepositReleaseCheck(can_release=False, reason="No deposit to release")
    if payment.deposit_status != DepositStatus.HELD.value:
        return DepositReleaseCheck(can_release=False, reason="Deposit already processed")
    if not return_inspection_completed:
        return DepositReleaseCheck(can_release=False, reason="Return inspection not completed")
    if has_pending_claims:
        return DepositReleaseCheck(can_release=False, reason="Pending damage claims exist")
    return DepositReleaseCheck(can_release=True)


def calculate_deposit_refund(deposit_amount, claimed_amount) -> Decimal:
    deposit = require_non_negative(deposit_amount, "Deposit amount")
    claimed = require_non_negative(claimed_amount, "Claimed amount")
    return max(Decimal("0.00"), deposit - claimed)


def claimed_from_deposit(payment: Payment | None) -> Decimal:
    if payment is None:
        return Decimal("0.00")
    return to_money(payment.deposit_claimed_amount or 0)


def available_deposit(payment: Payment | None) -> Decimal:
    """Part of a held deposit that claims have not yet taken."""
    if payment is None or payment.deposit_status != DepositStatus.HELD.value:
        return Decimal("0.00")
    return calculate_deposit_refund(payment.deposit_amount or 0, claimed_from_deposit(payment))


def estimate_deposit_refund(payment: Payment | None, pending_claims_total=0) -> Decimal:
    if payment is None:
        return Decimal("0.00")
    if payment.deposit_status != DepositStatus.HELD.value:
        return to_money(payment.deposit_refund_amount or 0)
    return calculate_deposit_refund(available_deposit(payment), pending_claims_total)


def serialize_deposit(payment: Payment | None, pending_claims_total=0) -> dict:
    return {
        "amount": payment.deposit_amount if payment else Decimal("0.00"),
        "status": payment.deposit_status if payment else DepositStatus.NONE.value,
        "claimedAmount": claimed_from_deposit(payment),
        "refundAmount": payment.deposit_refund_amount if payment else None,
        "estimatedRefund": estimate_deposit_refund(payment, pending_claims_total),
        "releasedAt": payment.deposit_released_at if payment else None,
    }


def release_deposit(
    store: RentalRecordStore,
    booking_id: int,
    actor: Actor,
    return_inspection_completed: bool | None = None,
    now: datetime | None = None,
) -> Payment:
    """Close out a held deposit.

    The unclaimed remainder goes back to the renter. A deposit with no claim
    deductions ends ``released``; one that claims drew on ends ``claimed``.
    """
    now = to_instant(now) if now is not None else utc_now()
    booking = store.get_booking(booking_id)
    if actor.role != "system":
        require_party(actor, booking, store.get_equipment(booking.equipment_id), "release this deposit")
    if return_inspection_completed is None:
        return_inspection_completed = booking.status == BookingStatus.COMPLETED.value

    payment = store.get_payment_for_booking(booking.id)
    check = can_release_deposit(payment, return_inspection_completed, store.has_open_claims(booking.id))
    if not check.can_release:
        DEPOSIT_LOGGER.warning("Deposit release refused booking_id=%s reason=%s", booking.id, check.reason)
        raise PolicyError(check.reason)

    claimed = claimed_from_deposit(payment)
    refund = available_deposit(payment)
    target = DepositStatus.CLAIMED.value if claimed > 0 else DepositStatus.RELEASED.value
    assert_deposit_transition(payment.deposit_status, target)
    store.compare_and_set_deposit_status(
        payment,
        DepositStatus.HELD.value,
        target,
        expected_claimed_amount=claimed,
        deposit_refund_amount=refund,
        deposit_released_at=now,
        updated_at=now,
    )
    store.record_event(
        booking.id,
        "deposit_released",
        {"amount": payment.deposit_amount, "claimed": claimed, "refund": refund, "releasedAt": now},
        created_by=actor.party_id,
        created_at=now,
    )
    DEPOSIT_LOGGER.info(
        "Deposit closed booking_id=%s status=%s claimed=%s refund=%s by=%s", booking.id, target, claimed, refund, actor.party_id
    )
    return payment


def refund_deposit_for_cancellation(
    store: RentalRecordStore,
    booking: BookingRequest,
    actor: Actor,
    now: datetime,
) -> Payment | None:
    payment = store.get_payment_for_booking(booking.id)
    if payment is None or payment.deposit_status != DepositStatus.HELD.value:
        return payment
    refund = available_deposit(payment)
    assert_deposit_transition(payment.deposit_status, DepositStatus.REFUNDED.value)
    store.compare_and_set_deposit_status(
        payment,
        DepositStatus.HELD.value,
        DepositStatus.REFUNDED.value,
        expected_claimed_amount=claimed_from_deposit(payment),
        deposit_refund_amount=refund,
        updated_at=now,
    )
    store.record_event(
        booking.id,
        "deposit_refunded",
        {"amount": refund, "reason": "booking_cancelled"},
        created_by=actor.party_id,
        created_at=now,
    )
    DEPOSIT_LOGGER.info("Deposit refunded on cancellation booking_id=%s amount=%s", booking.id, refund)
    return payment


def apply_claim_to_deposit(
    store: RentalRecordStore,
    payment: Payment | None,
    paid_from_deposit: Decimal,
    actor: Actor,
    now: datetime,
) -> Payment | None:
    """Take a settled claim's share from the held deposit.

    The deposit stays ``held`` while anything is left so later claims can
    still draw on it; once nothing remains it moves to ``claimed``.
    """
    if payment is None or payment.deposit_status != DepositStatus.HELD.value or paid_from_deposit <= 0:
        return payment
    remaining = available_deposit(payment)
    if paid_from_deposit > remaining:
        DEPOSIT_LOGGER.warning(
            "Claim deduction too large booking_id=%s amount=%s remaining=%s",
            payment.booking_request_id,
            paid_from_deposit,
            remaining,
        )
        raise PolicyError("Claim deduction exceeds held deposit")

    previous = claimed_from_deposit(payment)
    claimed = previous + paid_from_deposit
    refund = remaining - paid_from_deposit
    fields = {"deposit_claimed_amount": claimed, "updated_at": now}
    target = DepositStatus.HELD.value
    if refund == 0:
        target = DepositStatus.CLAIMED.value
        assert_deposit_transition(payment.deposit_status, target)
        fields["deposit_refund_amount"] = refund
    store.compare_and_set_deposit_status(
        payment, DepositStatus.HELD.value, target, expected_claimed_amount=previous, **fields
    )
    store.record_event(
        payment.booking_request_id,
        "deposit_claimed",
        {"claimed": paid_from_deposit, "totalClaimed": claimed, "remaining": refund},
        created_by=actor.party_id,
        created_at=now,
    )
    DEPOSIT_LOGGER.info(
        "Deposit claimed booking_id=%s claimed=%s total_claimed=%s remaining=%s",
        payment.booking_request_id,
        paid_from_deposit,
        claimed,
        refund,
    )
    return payment


def auto_release_deposits(
    store: RentalRecordStore,
    now: datetime | None = None,
    policy: SettlementPolicy | None = None,
    dry_run: bool = False,
    limit: int = 50,
) -> dict:
    policy = resolve_policy(policy)
    now = to_instant(now) if now is not None else utc_now()
    candidates = store.list_releasable_deposits(now, policy.deposit_release_window_hours, limit=limit)

    released_booking_ids: list[int] = []
    if not dry_run:
        for _payment, booking in candidates:
            release_deposit(store, booking.id, SYSTEM_ACTOR, return_inspection_completed=True, now=now)
            released_booking_ids.append(booking.id)

    DEPOSIT_LOGGER.info(
        "Auto release scan eligible=%s released=%s dry_run=%s", len(candidates), len(released_booking_ids), dry_run
    )
    return {
        "dryRun": dry_run,
        "scanned": len(candidates),
        "eligible": len(candidates),
        "released": len(released_booking_ids),
        "releasedBookingIDs": released_booking_ids,
    }
