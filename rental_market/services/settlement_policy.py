from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict, Field

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass


INSURANCE_TYPES = ("none", "basic", "premium")


class SettlementPolicy(BaseModel):
    """Tunable money and time rules for the booking engine.

    Loaded once from the environment; tests and callers can pass their own
    instance to any engine operation instead.
    """

    model_config = ConfigDict(frozen=True)

    fee_rate: Decimal = Decimal("0.05")
    max_rental_days: int = 30
    claim_response_window_hours: int = 72
    deposit_release_window_hours: int = 48
    insurance_coverage_limits: dict[str, Decimal] = Field(
        default_factory=lambda: {"none": Decimal("0"), "basic": Decimal("500"), "premium": Decimal("2000")}
    )
    insurance_premium_rates: dict[str, Decimal] = Field(
        default_factory=lambda: {"none": Decimal("0"), "basic": Decimal("0.05"), "premium": Decimal("0.10")}
    )
    currency: str = "USD"

    def coverage_limit(self, insurance_type: str | None) -> Decimal:
        return self.insurance_coverage_limits.get(insurance_type or "none", Decimal("0"))

    def premium_rate(self, insurance_type: str | None) -> Decimal:
        return self.insurance_premium_rates.get(insurance_type or "none", Decimal("0"))


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.environ.get(name) or default).strip()
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise RuntimeError(f"Invalid decimal in environment variable: {name}") from exc
    if value < 0:
        raise RuntimeError(f"Environment variable must not be negative: {name}")
    return value


def _env_int(name: str, default: str) -> int:
    raw = (os.environ.get(name) or default).strip()
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer in environment variable: {name}") from exc
    if value < 1:
        raise RuntimeError(f"Environment variable must be at least 1: {name}")
    return value


def load_settlement_policy() -> SettlementPolicy:
    return SettlementPolicy(
        fee_rate=_env_decimal("RENTAL_FEE_RATE", "0.05"),
        max_rental_days=_env_int("RENTAL_MAX_DAYS", "30"),
        claim_response_window_hours=_env_int("CLAIM_RESPONSE_WINDOW_HOURS", "72"),
        deposit_release_window_hours=_env_int("DEPOSIT_RELEASE_WINDOW_HOURS", "48"),
        insurance_coverage_limits={
            "none": Decimal("0"),
            "basic": _env_decimal("INSURANCE_LIMIT_BASIC", "500"),
            "premium": _env_decimal("INSURANCE_LIMIT_PREMIUM", "2000"),
        },
        currency=(os.environ.get("RENTAL_CURRENCY") or "USD").strip().upper(),
    )


_POLICY: SettlementPolicy | None = None


def get_settlement_policy() -> SettlementPolicy:
    global _POLICY
    if _POLICY is None:
        _POLICY = load_settlement_policy()
    return _POLICY


def resolve_policy(policy: SettlementPolicy | None) -> SettlementPolicy:
    return policy if policy is not None else get_settlement_policy()
