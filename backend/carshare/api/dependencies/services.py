# backend/carshare/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Every service receives the request's session and the shared clock, so tests
can override ``get_clock`` to pin "now" and ``get_stripe_service`` to swap
the gateway.
"""

from fastapi import Depends
from sqlalchemy.orm import Session

from ...services.booking_intake_service import BookingIntakeService
from ...services.booking_query_service import BookingQueryService
from ...services.deposit_case_service import DepositCaseService
from ...services.payment_transition_service import PaymentTransitionService
from ...services.reconciliation_service import ReconciliationService
from ...services.reservation_service import ReservationService
from ...services.scheduled_transition_service import ScheduledTransitionService
from ...services.stripe_event_service import StripeEventService
from ...services.stripe_service import StripeService
from ...utils.time_utils import Clock, utc_now
from .database import get_db


def get_clock() -> Clock:
    return utc_now


def get_stripe_service(
    db: Session = Depends(get_db), now: Clock = Depends(get_clock)
) -> StripeService:
    """Get StripeService instance."""
    return StripeService(db, now=now)


def get_payment_transition_service(
    db: Session = Depends(get_db), now: Clock = Depends(get_clock)
) -> PaymentTransitionService:
    return PaymentTransitionService(db, now=now)


def get_booking_intake_service(
    db: Session = Depends(get_db),
    now: Clock = Depends(get_clock),
    stripe_service: StripeService = Depends(get_stripe_service),
    transitions: PaymentTransitionService = Depends(get_payment_transition_service),
) -> BookingIntakeService:
    return BookingIntakeService(
        db, now=now, stripe_service=stripe_service, transitions=transitions
    )


def get_reservation_service(
    db: Session = Depends(get_db),
    now: Clock = Depends(get_clock),
    stripe_service: StripeService = Depends(get_stripe_service),
    transitions: PaymentTransitionService = Depends(get_payment_transition_service),
) -> ReservationService:
    scheduled = ScheduledTransitionService(
        db,
        now=now,
        stripe_service=stripe_service,
        scheduler=transitions.scheduler,
        transitions=transitions,
    )
    return ReservationService(
        db, now=now, scheduler=transitions.scheduler, scheduled_transitions=scheduled
    )


def get_booking_query_service(
    db: Session = Depends(get_db), now: Clock = Depends(get_clock)
) -> BookingQueryService:
    return BookingQueryService(db, now=now)


def get_deposit_case_service(
    db: Session = Depends(get_db), now: Clock = Depends(get_clock)
) -> DepositCaseService:
    return DepositCaseService(db, now=now)


def get_reconciliation_service(
    db: Session = Depends(get_db),
    now: Clock = Depends(get_clock),
    stripe_service: StripeService = Depends(get_stripe_service),
    transitions: PaymentTransitionService = Depends(get_payment_transition_service),
) -> ReconciliationService:
    return ReconciliationService(
        db, now=now, stripe_service=stripe_service, transitions=transitions
    )


def get_stripe_event_service(
    db: Session = Depends(get_db),
    now: Clock = Depends(get_clock),
    stripe_service: StripeService = Depends(get_stripe_service),
    transitions: PaymentTransitionService = Depends(get_payment_transition_service),
) -> StripeEventService:
    return StripeEventService(db, now=now, stripe_service=stripe_service, transitions=transitions)
