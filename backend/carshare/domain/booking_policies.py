"""
Booking and payment gates shared by services and read projections.

All functions are pure: callers pass the current instant explicitly.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import math
from typing import Optional

from carshare.core.config import settings
from carshare.core.exceptions import ValidationException
from carshare.models.booking import Booking, BookingStatus
from carshare.models.payment import (
    PRE_CAPTURE_PAYMENT_STATUSES,
    Payment,
    PaymentStatus,
    PaymentStrategy,
    PayoutStatus,
)
from carshare.utils.time_utils import as_utc

DAY_MS = 24 * 60 * 60 * 1000

CANCELLABLE_BOOKING_STATUSES = frozenset(
    {
        BookingStatus.PENDING.value,
        BookingStatus.PAYMENT_PENDING.value,
        BookingStatus.PAYMENT_FAILED.value,
    }
)

COMPLETABLE_BOOKING_STATUSES = frozenset(
    {
        BookingStatus.CONFIRMED.value,
        BookingStatus.IN_PROGRESS.value,
    }
)


def calculate_billable_days(start: datetime, end: datetime) -> int:
    """
    Inclusive day count: ceil((end - start + 1ms) / 1 day), at least 1.

    >>> calculate_billable_days(datetime(2026, 3, 1, 10), datetime(2026, 3, 2, 10))
    2
    """
    span_ms = (as_utc(end) - as_utc(start)) // timedelta(milliseconds=1)
    if span_ms < 0:
        raise ValidationException("INVALID_INPUT: Invalid booking range.")
    return max(1, math.ceil((span_ms + 1) / DAY_MS))


def can_cancel_reservation(booking: Optional[Booking], payment: Optional[Payment]) -> bool:
    if booking is None:
        return False
    if booking.status not in CANCELLABLE_BOOKING_STATUSES:
        return False
    if payment is None:
        return True
    return payment.status in PRE_CAPTURE_PAYMENT_STATUSES


def can_complete_booking(booking: Optional[Booking]) -> bool:
    """Only a held trip can finish; cancelled and unpaid bookings never do."""
    return booking is not None and booking.status in COMPLETABLE_BOOKING_STATUSES


def can_pay_now_for_booking(
    booking: Optional[Booking], payment: Optional[Payment], now: datetime
) -> bool:
    return bool(
        booking is not None
        and payment is not None
        and booking.status == BookingStatus.PAYMENT_PENDING.value
        and payment.status == PaymentStatus.METHOD_SAVED.value
        and payment.payment_due_at is not None
        and as_utc(now) < as_utc(payment.payment_due_at)
    )


def can_retry_payout_for_host(payment: Optional[Payment], now: datetime) -> bool:
    if payment is None or payment.status != PaymentStatus.PAID.value:
        return False
    strategy = payment.payment_strategy or PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
    if strategy != PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value:
        return False
    if payment.payout_status in (PayoutStatus.TRANSFERRED.value, PayoutStatus.REVERSED.value):
        return False
    if payment.release_at is None:
        return False
    return as_utc(now) >= as_utc(payment.release_at)


def lockbox_code_visible_at(booking: Booking) -> datetime:
    """Instant the renter may see the lockbox code and confirm collection."""
    return as_utc(booking.start_date) - timedelta(hours=settings.lockbox_reveal_window_hours)
