from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class FileClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    damageDescription: str
    estimatedCost: Decimal
    evidencePhotos: List[str] = []
    repairQuotes: List[str] = []


class ClaimResponseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Literal["accept", "dispute", "negotiate"]
    notes: Optional[str] = None
    counterOffer: Optional[Decimal] = None


class ClaimDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["resolve", "escalate"]
    finalAmount: Optional[Decimal] = None
