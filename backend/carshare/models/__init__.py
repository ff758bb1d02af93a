"""
Database models for the car rental platform.

The models are organized by functionality:
- Users and host payout profiles
- Car listings
- Bookings and their payments
- Deposit dispute cases
- Webhook ledger and durable scheduled actions
"""

from .booking import BLOCKING_BOOKING_STATUSES, Booking, BookingStatus, CollectionMethod
from .car import Car
from .deposit_case import (
    ACTIVE_DEPOSIT_CASE_STATUSES,
    DepositCase,
    DepositCaseResolution,
    DepositCaseStatus,
)
from .host import Host
from .payment import (
    CaptureStatus,
    DepositStatus,
    Payment,
    PaymentStatus,
    PaymentStrategy,
    PayoutStatus,
)
from .scheduled_action import ScheduledAction, ScheduledActionStatus, ScheduledActionType
from .types import Base
from .user import User, UserRole
from .webhook_event import WebhookEvent

__all__ = [
    "ACTIVE_DEPOSIT_CASE_STATUSES",
    "BLOCKING_BOOKING_STATUSES",
    "Base",
    "Booking",
    "BookingStatus",
    "CaptureStatus",
    "Car",
    "CollectionMethod",
    "DepositCase",
    "DepositCaseResolution",
    "DepositCaseStatus",
    "DepositStatus",
    "Host",
    "Payment",
    "PaymentStatus",
    "PaymentStrategy",
    "PayoutStatus",
    "ScheduledAction",
    "ScheduledActionStatus",
    "ScheduledActionType",
    "User",
    "UserRole",
    "WebhookEvent",
]
