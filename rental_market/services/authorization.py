from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

from rental_market.models.rental_models import BookingRequest, Equipment
from rental_market.services.errors import AuthorizationError


AUTHZ_LOGGER = logging.getLogger("rental_market.authz")


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    party_id: str
    role: Literal["owner", "renter", "arbiter", "system"]

    @field_validator("party_id")
    @classmethod
    def _strip_party_id(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("party_id is required")
        return value


SYSTEM_ACTOR = Actor(party_id="system", role="system")


def is_equipment_owner(actor: Actor, equipment: Equipment) -> bool:
    return actor.role == "owner" and actor.party_id == str(equipment.owner_id)


def is_booking_renter(actor: Actor, booking: BookingRequest) -> bool:
    return actor.role == "renter" and actor.party_id == str(booking.renter_id)


def require_owner(actor: Actor, equipment: Equipment, action: str) -> None:
    if not is_equipment_owner(actor, equipment):
        _deny(actor, action)


def require_renter(actor: Actor, booking: BookingRequest, action: str) -> None:
    if not is_booking_renter(actor, booking):
        _deny(actor, action)


def require_party(actor: Actor, booking: BookingRequest, equipment: Equipment, action: str) -> None:
    if not (is_booking_renter(actor, booking) or is_equipment_owner(actor, equipment)):
        _deny(actor, action)


def _deny(actor: Actor, action: str) -> None:
    AUTHZ_LOGGER.warning("Denied action=%s party_id=%s role=%s", action, actor.party_id, actor.role)
    raise AuthorizationError(f"Not permitted to {action}.")
