"""
Booking request and response schemas.

Covers reservation checkout, pay-now, cancellation, trip-start collection
and the read projections shown to renters and hosts.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field, model_validator

from ._strict_base import StrictModel, StrictRequestModel
from .base import Money
from .payment_schemas import PaymentSummary

ViewerRole = Literal["host", "renter"]

# ========== Request Models ==========


class ReservationCheckoutRequest(StrictRequestModel):
    """Reserve a car and open a Stripe Checkout session for it."""

    car_id: str = Field(..., description="Car to reserve")
    start_date: datetime = Field(..., description="Trip start (inclusive)")
    end_date: datetime = Field(..., description="Trip end (inclusive)")
    success_url: str = Field(..., description="Where Stripe sends the renter after checkout")
    cancel_url: str = Field(..., description="Where Stripe sends the renter on abandon")
    collection_method: Optional[str] = Field(
        default=None, description="in_person, lockbox or host_delivery"
    )

    @model_validator(mode="after")
    def _check_range(self) -> "ReservationCheckoutRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class PayNowRequest(StrictRequestModel):
    success_url: str
    cancel_url: str


# ========== Response Models ==========


class ReservationCheckoutResponse(StrictModel):
    booking_id: str
    payment_id: str
    url: Optional[str] = None
    payment_strategy: str
    subtotal: Money = Field(..., description="Rental amount before fees")
    service_fee: Money
    host_amount: Money
    deposit_amount: Money
    total: Money
    requires_immediate_payment: bool
    payment_due_at: datetime


class PayNowResponse(StrictModel):
    url: Optional[str] = None
    booking_id: str
    payment_id: str
    payment_due_at: Optional[datetime] = None
    total: Money


class CancelReservationResponse(StrictModel):
    ok: bool = True
    booking_id: str
    already_cancelled: bool
    booking_status: str
    payment_status: Optional[str] = None


class CollectionConfirmationResponse(StrictModel):
    ok: bool = True
    booking_id: str
    status: str
    host_collection_confirmed_at: Optional[datetime] = None
    renter_collection_confirmed_at: Optional[datetime] = None
    trip_started_at: Optional[datetime] = None
    lockbox_code_visible_at: datetime


class BookingCompletionResult(StrictModel):
    booking_id: str
    completed: bool
    reason: Literal[
        "not_found", "trip_not_ended", "already_completed", "not_completable", "completed"
    ]


class PayoutRetryResponse(StrictModel):
    booking_id: str
    released: bool
    reason: Optional[str] = None
    transfer_id: Optional[str] = None
    payout_status: Optional[str] = None


# ========== Read projections ==========


class CarSummary(StrictModel):
    id: str
    title: str
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    price_per_day: Optional[Money] = None


class UserSummary(StrictModel):
    id: str
    name: str


class BookingSummary(StrictModel):
    id: str
    status: str
    start_date: datetime
    end_date: datetime
    total_price: Money
    created_at: datetime
    updated_at: Optional[datetime] = None


class TripListItem(StrictModel):
    booking: BookingSummary
    car: Optional[CarSummary] = None
    host_user: Optional[UserSummary] = None
    payment: Optional[PaymentSummary] = None
    can_pay_now: bool
    can_cancel: bool


class CollectionDetails(StrictModel):
    method: str
    instructions: Optional[str] = None
    host_collection_confirmed_at: Optional[datetime] = None
    renter_collection_confirmed_at: Optional[datetime] = None
    trip_started_at: Optional[datetime] = None
    lockbox_code: Optional[str] = None
    lockbox_code_visible_at: Optional[datetime] = None
    is_lockbox_code_visible: bool = False


class BookingPaymentDetails(PaymentSummary):
    can_retry_payout: bool = False


class BookingDetailsResponse(StrictModel):
    viewer_role: ViewerRole
    booking: BookingSummary
    car: CarSummary
    host_user: Optional[UserSummary] = None
    renter_user: Optional[UserSummary] = None
    payment: Optional[BookingPaymentDetails] = None
    can_cancel: bool
    can_pay_now: bool
    collection: CollectionDetails


class HostBookingListItem(StrictModel):
    payment: PaymentSummary
    booking: Optional[BookingSummary] = None
    car: Optional[CarSummary] = None
    renter: Optional[UserSummary] = None
    can_file_deposit_case: bool
    can_cancel: bool


class TripList(StrictModel):
    items: List[TripListItem] = Field(default_factory=list)


class HostBookingList(StrictModel):
    items: List[HostBookingListItem] = Field(default_factory=list)
