from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateBookingRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    startDate: date
    endDate: date
    message: Optional[str] = None
    insuranceType: Literal["none", "basic", "premium"] = "none"


class BookingDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None


class PickupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pickupInspectionCompleted: bool = False


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnInspectionCompleted: bool = False


class DepositReleaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnInspectionCompleted: Optional[bool] = None
