# backend/carshare/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from .auth import get_current_user, require_support_user
from .database import get_db
from .services import (
    get_booking_intake_service,
    get_booking_query_service,
    get_clock,
    get_deposit_case_service,
    get_reconciliation_service,
    get_reservation_service,
    get_stripe_event_service,
    get_stripe_service,
)

__all__ = [
    # Auth
    "get_current_user",
    "require_support_user",
    # Database
    "get_db",
    # Services
    "get_clock",
    "get_stripe_service",
    "get_booking_intake_service",
    "get_booking_query_service",
    "get_deposit_case_service",
    "get_reconciliation_service",
    "get_reservation_service",
    "get_stripe_event_service",
]
