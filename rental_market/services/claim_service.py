from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict

from rental_market.models.rental_models import BookingRequest, BookingStatus, ClaimStatus, DamageClaim
from rental_market.services.authorization import Actor, SYSTEM_ACTOR, is_equipment_owner, require_owner, require_renter
from rental_market.services.date_utils import to_instant, utc_now
from rental_market.services.deposit_service import apply_claim_to_deposit, available_deposit
from rental_market.services.errors import AuthorizationError, IllegalTransitionError, PolicyError, ValidationError
from rental_market.services.pricing_service import require_non_negative, to_money
from rental_market.services.record_store import RentalRecordStore
from rental_market.services.settlement_policy import SettlementPolicy, resolve_policy


CLAIM_TRANSITIONS = {
    ClaimStatus.PENDING.value: {ClaimStatus.ACCEPTED.value, ClaimStatus.DISPUTED.value, ClaimStatus.ESCALATED.value},
    ClaimStatus.ACCEPTED.value: {ClaimStatus.RESOLVED.value},
    ClaimStatus.DISPUTED.value: {ClaimStatus.RESOLVED.value, ClaimStatus.ESCALATED.value},
    ClaimStatus.RESOLVED.value: set(),
    ClaimStatus.ESCALATED.value: set(),
}
# Unanswered claims escalate on the response-window timer, never by a party.
SYSTEM_ONLY_TRANSITIONS = {(ClaimStatus.PENDING.value, ClaimStatus.ESCALATED.value)}
CLAIMABLE_BOOKING_STATES = {BookingStatus.ACTIVE.value, BookingStatus.COMPLETED.value}
CLAIM_LOGGER = logging.getLogger("rental_market.claims")


class RenterResponse(BaseModel):
    action: Literal["accept", "dispute", "negotiate"]
    notes: str | None = None
    counter_offer: Decimal | None = None
    responded_at: datetime


class ClaimAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    final_amount: Decimal
    paid_from_deposit: Decimal
    paid_from_insurance: Decimal
    additional_charge: Decimal


class ClaimResolution(ClaimAllocation):
    resolved_at: datetime
    resolved_by: str


def assert_claim_transition(current: str, target: str, actor: Actor | None = None) -> None:
    allowed = target in CLAIM_TRANSITIONS.get(current, set())
    if allowed and (current, target) in SYSTEM_ONLY_TRANSITIONS:
        allowed = actor is not None and actor.role == "system"
    if not allowed:
        CLAIM_LOGGER.warning("Illegal claim transition %s -> %s", current, target)
        raise IllegalTransitionError(current, target)


def allocate_claim_amount(final_amount, deposit_available, insurance_limit) -> ClaimAllocation:
    """Split a claim: held deposit first, then insurance up to its limit, rest charged to the renter."""
    final = require_non_negative(final_amount, "Final amount")
    deposit = require_non_negative(deposit_available, "Deposit")
    limit = require_non_negative(insurance_limit, "Insurance limit")

    paid_from_deposit = min(final, deposit)
    remainder = final - paid_from_deposit
    paid_from_insurance = min(remainder, limit)
    additional_charge = remainder - paid_from_insurance
    return ClaimAllocation(
        final_amount=final,
        paid_from_deposit=paid_from_deposit,
        paid_from_insurance=paid_from_insurance,
        additional_charge=additional_charge,
    )


def parse_renter_response(claim: DamageClaim) -> RenterResponse | None:
    payload = _parse_json(claim.renter_response)
    return RenterResponse.model_validate(payload) if payload else None


def parse_resolution(claim: DamageClaim) -> ClaimResolution | None:
    payload = _parse_json(claim.resolution)
    return ClaimResolution.model_validate(payload) if payload else None


def parse_references(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(item) for item in parsed] if isinstance(parsed, list) else []


def _parse_json(raw: str | None) -> dict:
    if not raw:
        return {}
    value = raw.strip()
    if not value.startswith("{"):
        return {}
    try:
        parsed = json.loads(value)
        return parsed if isinstance(parsed, dict) else {}
    except json.JSONDecodeError:
        return {}


def _resolve_now(now) -> datetime:
    return to_instant(now) if now is not None else utc_now()


def file_claim(
    store: RentalRecordStore,
    booking_id: int,
    actor: Actor,
    damage_description: str,
    estimated_cost,
    evidence_photos=(),
    repair_quotes=(),
    now=None,
) -> DamageClaim:
    now = _resolve_now(now)
    booking = store.get_booking(booking_id)
    require_owner(actor, store.get_equipment(booking.equipment_id), "file a damage claim")
    if booking.status not in CLAIMABLE_BOOKING_STATES:
        CLAIM_LOGGER.warning("Claim refused booking_id=%s status=%s", booking.id, booking.status)
        raise PolicyError("Claims can only be filed against active or completed rentals")
    description = (damage_description or "").strip()
    if not description:
        raise ValidationError("Damage description is required.")
    cost = require_non_negative(estimated_cost, "Estimated cost")

    claim = store.add_claim(
        DamageClaim(
            booking_id=booking.id,
            filed_by=actor.party_id,
            filed_at=now,
            damage_description=description,
            evidence_photos=json.dumps([str(item) for item in evidence_photos or []]),
            estimated_cost=cost,
            repair_quotes=json.dumps([str(item) for item in repair_quotes or []]),
            status=ClaimStatus.PENDING.value,
            version=1,
            created_at=now,
            updated_at=now,
        )
    )
    store.record_event(
        booking.id, "claim_filed", {"claimID": claim.id, "estimatedCost": cost}, created_by=actor.party_id, created_at=now
    )
    CLAIM_LOGGER.info("Claim filed claim_id=%s booking_id=%s estimated_cost=%s", claim.id, booking.id, cost)
    return claim


def respond_to_claim(
    store: RentalRecordStore,
    claim_id: int,
    actor: Actor,
    action: str,
    notes: str | None = None,
    counter_offer=None,
    now=None,
    policy: SettlementPolicy | None = None,
) -> DamageClaim:
    policy = resolve_policy(policy)
    now = _resolve_now(now)
    claim = store.get_claim(claim_id)
    booking = store.get_booking(claim.booking_id)
    require_renter(actor, booking, "respond to this claim")
    if action not in {"accept", "dispute", "negotiate"}:
        raise ValidationError(f"Unknown claim action: {action}")

    target = ClaimStatus.ACCEPTED.value if action == "accept" else ClaimStatus.DISPUTED.value
    assert_claim_transition(claim.status, target, actor)
    if now > claim.filed_at + timedelta(hours=policy.claim_response_window_hours):
        CLAIM_LOGGER.warning("Claim response after window claim_id=%s filed_at=%s", claim.id, claim.filed_at)
        raise PolicyError("Response window has expired")

    offer = None
    if action != "accept" and counter_offer is not None:
        offer = require_non_negative(counter_offer, "Counter offer")
    if action == "negotiate" and offer is None:
        raise ValidationError("A counter offer is required to negotiate.")

    response = RenterResponse(action=action, notes=(notes or "").strip() or None, counter_offer=offer, responded_at=now)
    current = claim.status
    store.compare_and_set_claim(claim, current, target, renter_response=response.model_dump_json(), updated_at=now)
    store.record_event(
        booking.id,
        "claim_responded",
        {"claimID": claim.id, "action": action, "counterOffer": offer},
        created_by=actor.party_id,
        created_at=now,
    )
    CLAIM_LOGGER.info("Claim response claim_id=%s action=%s %s -> %s", claim.id, action, current, target)

    if target == ClaimStatus.ACCEPTED.value:
        _settle(store, claim, booking, ClaimStatus.RESOLVED.value, to_money(claim.estimated_cost), actor, now, policy)
    return claim


def decide_disputed_claim(
    store: RentalRecordStore,
    claim_id: int,
    actor: Actor,
    decision: str,
    final_amount=None,
    now=None,
    policy: SettlementPolicy | None = None,
) -> DamageClaim:
    policy = resolve_policy(policy)
    now = _resolve_now(now)
    claim = store.get_claim(claim_id)
    booking = store.get_booking(claim.booking_id)
    equipment = store.get_equipment(booking.equipment_id)
    if not (actor.role == "arbiter" or is_equipment_owner(actor, equipment)):
        CLAIM_LOGGER.warning("Claim decision denied claim_id=%s party_id=%s role=%s", claim.id, actor.party_id, actor.role)
        raise AuthorizationError("Not permitted to decide this claim.")

    if decision == "resolve":
        target = ClaimStatus.RESOLVED.value
    elif decision == "escalate":
        target = ClaimStatus.ESCALATED.value
    else:
        raise ValidationError(f"Unknown claim decision: {decision}")
    if claim.status != ClaimStatus.DISPUTED.value:
        CLAIM_LOGGER.warning("Claim decision on non-disputed claim claim_id=%s status=%s", claim.id, claim.status)
        raise IllegalTransitionError(str(claim.status), target)
    assert_claim_transition(claim.status, target, actor)

    if final_amount is not None:
        amount = require_non_negative(final_amount, "Final amount")
    elif target == ClaimStatus.RESOLVED.value:
        response = parse_renter_response(claim)
        if response is None or response.counter_offer is None:
            raise ValidationError("A final amount is required to resolve this claim.")
        amount = to_money(response.counter_offer)
    else:
        amount = to_money(claim.estimated_cost)

    return _settle(store, claim, booking, target, amount, actor, now, policy)


def escalate_unanswered_claims(store: RentalRecordStore, now=None, policy: SettlementPolicy | None = None) -> list[DamageClaim]:
    policy = resolve_policy(policy)
    now = _resolve_now(now)
    cutoff = now - timedelta(hours=policy.claim_response_window_hours)
    escalated: list[DamageClaim] = []
    for claim in store.list_unanswered_claims(cutoff):
        booking = store.get_booking(claim.booking_id)
        assert_claim_transition(claim.status, ClaimStatus.ESCALATED.value, SYSTEM_ACTOR)
        _settle(store, claim, booking, ClaimStatus.ESCALATED.value, to_money(claim.estimated_cost), SYSTEM_ACTOR, now, policy)
        escalated.append(claim)
    CLAIM_LOGGER.info("Claim escalation scan cutoff=%s escalated=%s", cutoff, len(escalated))
    return escalated


def _settle(
    store: RentalRecordStore,
    claim: DamageClaim,
    booking: BookingRequest,
    target: str,
    final_amount: Decimal,
    actor: Actor,
    now: datetime,
    policy: SettlementPolicy,
) -> DamageClaim:
    payment = store.get_payment_for_booking(booking.id)
    allocation = allocate_claim_amount(
        final_amount,
        available_deposit(payment),
        policy.coverage_limit(booking.insurance_type),
    )
    resolution = ClaimResolution(**allocation.model_dump(), resolved_at=now, resolved_by=actor.party_id)
    current = claim.status
    store.compare_and_set_claim(claim, current, target, resolution=resolution.model_dump_json(), updated_at=now)
    apply_claim_to_deposit(store, payment, allocation.paid_from_deposit, actor, now)
    store.record_event(
        booking.id,
        "claim_resolved" if target == ClaimStatus.RESOLVED.value else "claim_escalated",
        {"claimID": claim.id, **allocation.model_dump()},
        created_by=actor.party_id,
        created_at=now,
    )
    CLAIM_LOGGER.info(
        "Claim settled claim_id=%s %s -> %s final=%s deposit=%s insurance=%s additional=%s",
        claim.id,
        current,
        target,
        allocation.final_amount,
        allocation.paid_from_deposit,
        allocation.paid_from_insurance,
        allocation.additional_charge,
    )
    return claim


def serialize_claim(claim: DamageClaim) -> dict:
    response = parse_renter_response(claim)
    resolution = parse_resolution(claim)
    return {
        "claimID": claim.id,
        "bookingID": claim.booking_id,
        "filedBy": claim.filed_by,
        "filedAt": claim.filed_at,
        "damageDescription": claim.damage_description,
        "estimatedCost": claim.estimated_cost,
        "evidencePhotos": parse_references(claim.evidence_photos),
        "repairQuotes": parse_references(claim.repair_quotes),
        "status": claim.status,
        "version": claim.version,
        "renterResponse": {
            "action": response.action,
            "notes": response.notes,
            "counterOffer": response.counter_offer,
            "respondedAt": response.responded_at,
        } if response else None,
        "resolution": {
            "finalAmount": resolution.final_amount,
            "paidFromDeposit": resolution.paid_from_deposit,
            "paidFromInsurance": resolution.paid_from_insurance,
            "additionalCharge": resolution.additional_charge,
            "resolvedAt": resolution.resolved_at,
            "resolvedBy": resolution.resolved_by,
        } if resolution else None,
    }
