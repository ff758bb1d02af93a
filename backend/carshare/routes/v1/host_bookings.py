# backend/carshare/routes/v1/host_bookings.py
"""
Host booking routes - API v1

Endpoints:
    GET / - Payments for the host's cars
    POST /{booking_id}/payout/retry - Retry a failed host payout
"""

import asyncio
import logging

from fastapi import APIRouter, Depends

from ...api.dependencies import get_booking_query_service, get_current_user, get_reservation_service
from ...core.exceptions import DomainException
from ...models.user import User
from ...schemas.booking_schemas import HostBookingList, PayoutRetryResponse
from ...services.booking_query_service import BookingQueryService
from ...services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["host-bookings-v1"])


@router.get("", response_model=HostBookingList)
async def list_host_bookings(
    current_user: User = Depends(get_current_user),
    query_service: BookingQueryService = Depends(get_booking_query_service),
) -> HostBookingList:
    return await asyncio.to_thread(query_service.list_host_bookings_with_payouts, current_user)


@router.post("/{booking_id}/payout/retry", response_model=PayoutRetryResponse)
async def retry_host_payout(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    reservation_service: ReservationService = Depends(get_reservation_service),
) -> PayoutRetryResponse:
    try:
        return await asyncio.to_thread(
            reservation_service.retry_host_payout_transfer, current_user, booking_id
        )
    except DomainException as e:
        raise e.to_http_exception()
