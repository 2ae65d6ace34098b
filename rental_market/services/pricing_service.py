from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict

from rental_market.models.rental_models import AvailabilitySlot, Equipment
from rental_market.services.date_utils import iter_days, parse_date, rental_days
from rental_market.services.errors import InvalidRangeError, ValidationError
from rental_market.services.settlement_policy import INSURANCE_TYPES, SettlementPolicy, resolve_policy


CENT = Decimal("0.01")


class BookingQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    daily_rate: Decimal
    days: int
    subtotal: Decimal
    fees: Decimal
    total: Decimal
    insurance_type: str = "none"
    insurance_cost: Decimal = Decimal("0.00")
    currency: str = "USD"


def to_money(value) -> Decimal:
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"Invalid amount: {value}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def require_non_negative(value, label: str) -> Decimal:
    amount = to_money(value)
    if amount < 0:
        raise ValidationError(f"{label} must not be negative.")
    return amount


def _custom_rates_by_day(slots: Iterable[AvailabilitySlot] | None) -> dict[date, Decimal]:
    rates: dict[date, Decimal] = {}
    for slot in slots or []:
        if slot.custom_rate is None:
            continue
        rate = to_money(slot.custom_rate)
        if rate <= 0:
            raise ValidationError(f"Custom rate for {slot.date} must be positive.")
        rates[parse_date(slot.date)] = rate
    return rates


def calculate_booking_total(
    daily_rate,
    start_date,
    end_date,
    slots: Iterable[AvailabilitySlot] | None = None,
    insurance_type: str = "none",
    policy: SettlementPolicy | None = None,
) -> BookingQuote:
    policy = resolve_policy(policy)
    rate = to_money(daily_rate)
    if rate <= 0:
        raise ValidationError("Daily rate must be positive.")
    start = parse_date(start_date)
    end = parse_date(end_date)
    if end <= start:
        raise InvalidRangeError("End date must be after start date.")
    if insurance_type not in INSURANCE_TYPES:
        raise ValidationError(f"Unknown insurance type: {insurance_type}")

    days = max(1, rental_days(start, end))
    overrides = _custom_rates_by_day(slots)
    if overrides:
        subtotal = sum((overrides.get(day, rate) for day in iter_days(start, end)), Decimal("0"))
    else:
        subtotal = rate * days
    subtotal = to_money(subtotal)
    fees = to_money(subtotal * policy.fee_rate)
    insurance_cost = to_money(subtotal * policy.premium_rate(insurance_type))

    return BookingQuote(
        daily_rate=rate,
        days=days,
        subtotal=subtotal,
        fees=fees,
        total=subtotal + fees,
        insurance_type=insurance_type,
        insurance_cost=insurance_cost,
        currency=policy.currency,
    )


def calculate_deposit_amount(equipment: Equipment) -> Decimal:
    if equipment.damage_deposit_amount is not None and to_money(equipment.damage_deposit_amount) > 0:
        return to_money(equipment.damage_deposit_amount)
    percentage = int(equipment.damage_deposit_percentage or 0)
    if percentage > 0:
        return to_money(to_money(equipment.daily_rate) * percentage / Decimal(100))
    return Decimal("0.00")


def format_booking_duration(start_date, end_date) -> str:
    days = rental_days(parse_date(start_date), parse_date(end_date))
    if days == 1:
        return "1 day"
    if days < 7:
        return f"{days} days"
    weeks, remaining = divmod(days, 7)
    label = f"{weeks} week{'s' if weeks > 1 else ''}"
    if remaining == 0:
        return label
    return f"{label} {remaining} day{'s' if remaining > 1 else ''}"
