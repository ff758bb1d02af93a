# backend/carshare/routes/v1/bookings.py
"""
Renter booking routes - API v1

Endpoints:
    POST /checkout - Reserve a car and open Stripe Checkout
    GET /mine - The caller's trips with payment state
    GET /{booking_id} - Booking details for its host or renter
    POST /{booking_id}/pay-now - Pay early with the saved card
    POST /{booking_id}/cancel - Cancel before money is captured
    POST /{booking_id}/collection/confirm - Confirm the car was collected
"""

import asyncio
import logging
from typing import NoReturn

from fastapi import APIRouter, Body, Depends

from ...api.dependencies import (
    get_booking_intake_service,
    get_booking_query_service,
    get_current_user,
    get_reservation_service,
)
from ...core.exceptions import DomainException, NotFoundException
from ...models.user import User
from ...schemas.booking_schemas import (
    BookingDetailsResponse,
    CancelReservationResponse,
    CollectionConfirmationResponse,
    PayNowRequest,
    PayNowResponse,
    ReservationCheckoutRequest,
    ReservationCheckoutResponse,
    TripList,
)
from ...services.booking_intake_service import BookingIntakeService
from ...services.booking_query_service import BookingQueryService
from ...services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    raise exc.to_http_exception()


@router.post("/checkout", response_model=ReservationCheckoutResponse)
async def start_reservation_checkout(
    payload: ReservationCheckoutRequest = Body(...),
    current_user: User = Depends(get_current_user),
    intake_service: BookingIntakeService = Depends(get_booking_intake_service),
) -> ReservationCheckoutResponse:
    try:
        return await asyncio.to_thread(
            intake_service.start_reservation_checkout,
            current_user,
            payload.car_id,
            payload.start_date,
            payload.end_date,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
            collection_method=payload.collection_method,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/mine", response_model=TripList)
async def list_my_trips(
    current_user: User = Depends(get_current_user),
    query_service: BookingQueryService = Depends(get_booking_query_service),
) -> TripList:
    return await asyncio.to_thread(query_service.list_my_trips_with_payments, current_user)


@router.get("/{booking_id}", response_model=BookingDetailsResponse)
async def get_booking_details(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    query_service: BookingQueryService = Depends(get_booking_query_service),
) -> BookingDetailsResponse:
    """Booking details; 404 for callers who are neither host nor renter."""
    details = await asyncio.to_thread(query_service.get_booking_details, current_user, booking_id)
    if details is None:
        handle_domain_exception(NotFoundException("NOT_FOUND: Booking not found."))
    return details


@router.post("/{booking_id}/pay-now", response_model=PayNowResponse)
async def pay_now(
    booking_id: str,
    payload: PayNowRequest = Body(...),
    current_user: User = Depends(get_current_user),
    intake_service: BookingIntakeService = Depends(get_booking_intake_service),
) -> PayNowResponse:
    try:
        return await asyncio.to_thread(
            intake_service.create_reservation_pay_now_session,
            current_user,
            booking_id,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/cancel", response_model=CancelReservationResponse)
async def cancel_reservation(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    reservation_service: ReservationService = Depends(get_reservation_service),
) -> CancelReservationResponse:
    try:
        return await asyncio.to_thread(
            reservation_service.cancel_reservation, current_user, booking_id
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/collection/confirm", response_model=CollectionConfirmationResponse)
async def confirm_trip_start_collection(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    reservation_service: ReservationService = Depends(get_reservation_service),
) -> CollectionConfirmationResponse:
    try:
        return await asyncio.to_thread(
            reservation_service.confirm_trip_start_collection, current_user, booking_id
        )
    except DomainException as e:
        handle_domain_exception(e)
