import logging
import os
from datetime import date
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from rental_market.db.deps import get_rental_db
from rental_market.schemas.bookings import (
    BookingDecisionRequest,
    CreateBookingRequestDto,
    DepositReleaseRequest,
    PickupRequest,
    ReturnRequest,
)
from rental_market.schemas.claims import ClaimDecisionRequest, ClaimResponseRequest, FileClaimRequest
from rental_market.services.authorization import Actor
from rental_market.services.availability_service import availability_cache, check_availability, validate_rental_window
from rental_market.services.booking_service import (
    activate_booking,
    approve_booking,
    cancel_booking,
    complete_booking,
    create_booking_request,
    reject_booking,
    serialize_booking,
)
from rental_market.services.claim_service import (
    decide_disputed_claim,
    escalate_unanswered_claims,
    file_claim,
    respond_to_claim,
    serialize_claim,
)
from rental_market.services.countdown_service import calculate_rental_countdown, serialize_countdown
from rental_market.services.deposit_service import (
    auto_release_deposits,
    can_release_deposit,
    release_deposit,
    serialize_deposit,
)
from rental_market.services.errors import (
    AuthorizationError,
    ConflictError,
    IllegalTransitionError,
    PolicyError,
    RecordNotFoundError,
    RentalEngineError,
    ValidationError,
)
from rental_market.services.pricing_service import calculate_booking_total, calculate_deposit_amount, format_booking_duration, to_money
from rental_market.services.record_store import OPEN_CLAIM_STATES, RentalRecordStore

app = FastAPI(title="Rental Market")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env("CORS_ALLOW_ORIGINS", "http://127.0.0.1,http://localhost")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials="*" not in _CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

API_LOGGER = logging.getLogger("rental_market.api")
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (RecordNotFoundError, 404),
    (ConflictError, 409),
    (IllegalTransitionError, 409),
    (PolicyError, 422),
)


@app.exception_handler(RentalEngineError)
def handle_engine_error(request: Request, exc: RentalEngineError):
    status_code = 400
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = code
            break
    body = {"detail": exc.reason, "error": type(exc).__name__}
    if isinstance(exc, ConflictError):
        body["conflictingDates"] = [day.isoformat() for day in exc.conflicting_dates]
    API_LOGGER.warning("Request refused path=%s status=%s error=%s reason=%s", request.url.path, status_code, type(exc).__name__, exc.reason)
    return JSONResponse(status_code=status_code, content=body)


def get_actor(
    x_party_id: str | None = Header(None, alias="X-Party-ID"),
    x_party_role: str | None = Header(None, alias="X-Party-Role"),
) -> Actor:
    if not x_party_id or not x_party_role:
        raise HTTPException(status_code=401, detail="Acting party is required.")
    try:
        return Actor(party_id=x_party_id, role=x_party_role.strip().lower())
    except PydanticValidationError:
        raise HTTPException(status_code=401, detail="Invalid acting party.")


def _commit(db: Session, fn, *args, **kwargs):
    try:
        result = fn(*args, **kwargs)
        db.commit()
        return result
    except Exception:
        db.rollback()
        raise


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/equipment/{equipment_id}/quote")
def get_quote(
    equipment_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    insurance_type: str = Query("none", alias="insuranceType"),
    db: Session = Depends(get_rental_db),
):
    store = RentalRecordStore(db)
    equipment = store.get_equipment(equipment_id)
    start, end = validate_rental_window(start_date, end_date)
    quote = calculate_booking_total(
        equipment.daily_rate,
        start,
        end,
        store.list_availability_slots(equipment.id, start, end),
        insurance_type=insurance_type,
    )
    return {
        "equipmentID": equipment.id,
        "startDate": start,
        "endDate": end,
        "days": quote.days,
        "duration": format_booking_duration(start, end),
        "dailyRate": quote.daily_rate,
        "subtotal": quote.subtotal,
        "fees": quote.fees,
        "total": quote.total,
        "insuranceType": quote.insurance_type,
        "insuranceCost": quote.insurance_cost,
        "depositAmount": calculate_deposit_amount(equipment),
        "currency": quote.currency,
    }


@app.get("/api/equipment/{equipment_id}/availability")
def get_availability(
    equipment_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    db: Session = Depends(get_rental_db),
):
    store = RentalRecordStore(db)
    store.get_equipment(equipment_id)
    cached = availability_cache.get(equipment_id, start_date, end_date)
    result = cached
    if result is None:
        result = check_availability(
            start_date,
            end_date,
            store.list_blocking_bookings(equipment_id, start_date, end_date),
            store.list_availability_slots(equipment_id, start_date, end_date),
        )
        availability_cache.put(equipment_id, start_date, end_date, result)
    return {
        "equipmentID": equipment_id,
        "startDate": start_date,
        "endDate": end_date,
        "available": result.available,
        "conflictingDates": result.conflicting_dates,
        "cached": cached is not None,
    }


@app.post("/api/bookings")
def create_booking(
    payload: CreateBookingRequestDto,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    store = RentalRecordStore(db)
    booking = _commit(
        db,
        create_booking_request,
        store,
        payload.equipmentID,
        actor,
        payload.startDate,
        payload.endDate,
        message=payload.message,
        insurance_type=payload.insuranceType,
    )
    return serialize_booking(booking)


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: int, db: Session = Depends(get_rental_db)):
    return serialize_booking(RentalRecordStore(db).get_booking(booking_id))


@app.post("/api/bookings/{booking_id}/approve")
def approve(booking_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_actor)):
    booking = _commit(db, approve_booking, RentalRecordStore(db), booking_id, actor)
    return serialize_booking(booking)


@app.post("/api/bookings/{booking_id}/reject")
def reject(
    booking_id: int,
    payload: BookingDecisionRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    booking = _commit(db, reject_booking, RentalRecordStore(db), booking_id, actor, reason=payload.reason)
    return serialize_booking(booking)


@app.post("/api/bookings/{booking_id}/cancel")
def cancel(
    booking_id: int,
    payload: BookingDecisionRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    booking = _commit(db, cancel_booking, RentalRecordStore(db), booking_id, actor, reason=payload.reason)
    return serialize_booking(booking)


@app.post("/api/bookings/{booking_id}/activate")
def activate(
    booking_id: int,
    payload: PickupRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    booking = _commit(db, activate_booking, RentalRecordStore(db), booking_id, actor, payload.pickupInspectionCompleted)
    return serialize_booking(booking)


@app.post("/api/bookings/{booking_id}/complete")
def complete(
    booking_id: int,
    payload: ReturnRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    booking = _commit(db, complete_booking, RentalRecordStore(db), booking_id, actor, payload.returnInspectionCompleted)
    return serialize_booking(booking)


@app.get("/api/bookings/{booking_id}/countdown")
def get_countdown(booking_id: int, db: Session = Depends(get_rental_db)):
    booking = RentalRecordStore(db).get_booking(booking_id)
    countdown = calculate_rental_countdown(booking.start_date, booking.end_date)
    return {"bookingID": booking.id, "status": booking.status, **serialize_countdown(countdown)}


@app.get("/api/bookings/{booking_id}/deposit")
def get_deposit_status(
    booking_id: int,
    return_inspection_completed: bool | None = Query(None, alias="returnInspectionCompleted"),
    db: Session = Depends(get_rental_db),
):
    store = RentalRecordStore(db)
    booking = store.get_booking(booking_id)
    payment = store.get_payment_for_booking(booking.id)
    if return_inspection_completed is None:
        return_inspection_completed = booking.completed_at is not None
    check = can_release_deposit(payment, return_inspection_completed, store.has_open_claims(booking.id))
    pending_claims_total = sum(
        (to_money(claim.estimated_cost) for claim in store.list_claims(booking.id) if claim.status in OPEN_CLAIM_STATES),
        Decimal("0.00"),
    )
    deposit = serialize_deposit(payment, pending_claims_total)
    return {
        "bookingID": booking.id,
        "depositAmount": deposit["amount"],
        "depositStatus": deposit["status"],
        "depositClaimedAmount": deposit["claimedAmount"],
        "depositRefundAmount": deposit["refundAmount"],
        "depositReleasedAt": deposit["releasedAt"],
        "canRelease": check.can_release,
        "reason": check.reason,
        "estimatedRefund": deposit["estimatedRefund"],
    }


@app.post("/api/bookings/{booking_id}/deposit/release")
def release(
    booking_id: int,
    payload: DepositReleaseRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    store = RentalRecordStore(db)
    payment = _commit(db, release_deposit, store, booking_id, actor, payload.returnInspectionCompleted)
    deposit = serialize_deposit(payment)
    return {
        "bookingID": booking_id,
        "depositStatus": deposit["status"],
        "depositClaimedAmount": deposit["claimedAmount"],
        "depositRefundAmount": deposit["refundAmount"],
        "depositReleasedAt": deposit["releasedAt"],
    }


@app.post("/api/deposits/auto-release")
def run_auto_release(
    dry_run: bool = Query(False, alias="dryRun"),
    limit: int = Query(50, ge=1, le=250),
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    if actor.role != "system":
        raise HTTPException(status_code=403, detail="System role required.")
    return _commit(db, auto_release_deposits, RentalRecordStore(db), dry_run=dry_run, limit=limit)


@app.post("/api/bookings/{booking_id}/claims")
def create_claim(
    booking_id: int,
    payload: FileClaimRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    claim = _commit(
        db,
        file_claim,
        RentalRecordStore(db),
        booking_id,
        actor,
        payload.damageDescription,
        payload.estimatedCost,
        evidence_photos=payload.evidencePhotos,
        repair_quotes=payload.repairQuotes,
    )
    return serialize_claim(claim)


@app.get("/api/bookings/{booking_id}/claims")
def list_claims(booking_id: int, db: Session = Depends(get_rental_db)):
    store = RentalRecordStore(db)
    store.get_booking(booking_id)
    return [serialize_claim(claim) for claim in store.list_claims(booking_id)]


@app.post("/api/claims/{claim_id}/respond")
def respond(
    claim_id: int,
    payload: ClaimResponseRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    claim = _commit(
        db,
        respond_to_claim,
        RentalRecordStore(db),
        claim_id,
        actor,
        payload.action,
        notes=payload.notes,
        counter_offer=payload.counterOffer,
    )
    return serialize_claim(claim)


@app.post("/api/claims/{claim_id}/decide")
def decide(
    claim_id: int,
    payload: ClaimDecisionRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_actor),
):
    claim = _commit(
        db,
        decide_disputed_claim,
        RentalRecordStore(db),
        claim_id,
        actor,
        payload.decision,
        final_amount=payload.finalAmount,
    )
    return serialize_claim(claim)


@app.post("/api/claims/escalate-overdue")
def escalate_overdue(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_actor)):
    if actor.role != "system":
        raise HTTPException(status_code=403, detail="System role required.")
    claims = _commit(db, escalate_unanswered_claims, RentalRecordStore(db))
    return {"escalated": len(claims), "claims": [serialize_claim(claim) for claim in claims]}
