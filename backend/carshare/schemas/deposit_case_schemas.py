"""Deposit dispute case schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import ConfigDict, Field

from ..models.deposit_case import DepositCaseResolution
from ._strict_base import StrictModel, StrictRequestModel
from .base import Money


class FileDepositCaseRequest(StrictRequestModel):
    booking_id: str
    reason: str = Field(default="", max_length=4000)
    requested_amount: Optional[Decimal] = Field(
        default=None, description="Clamped to the held deposit; defaults to all of it"
    )


class ResolveDepositCaseRequest(StrictRequestModel):
    resolution: DepositCaseResolution
    resolution_amount: Optional[Decimal] = None
    reviewer_note: Optional[str] = Field(default=None, max_length=4000)


class FileDepositCaseResponse(StrictModel):
    case_id: str
    payment_id: str
    booking_id: str
    requested_amount: Money


class ResolveDepositCaseResponse(StrictModel):
    case_id: str
    status: str
    resolution_amount: Money
    deposit_status: Optional[str] = None


class DepositCaseResponse(StrictModel):
    model_config = ConfigDict(extra="forbid", from_attributes=True)

    id: str
    payment_id: str
    booking_id: str
    host_id: str
    renter_id: str
    requested_amount: Money
    resolution_amount: Optional[Money] = None
    status: str
    reason: str
    resolved_by_user_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class DepositCaseList(StrictModel):
    items: List[DepositCaseResponse] = Field(default_factory=list)
