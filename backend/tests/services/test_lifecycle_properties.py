"""
Order independence of the ingestion paths and double-booking safety.

A completed checkout can reach the service three ways: the webhook, the
renter's redirect and the stale sweep. Every ordering must land on the same
state with one set of scheduled actions and one processor call per action.
"""

from datetime import timedelta
from itertools import permutations
from typing import Dict

import pytest
from sqlalchemy.orm import sessionmaker

from carshare.models.booking import Booking, BookingStatus
from carshare.models.payment import Payment, PaymentStatus, PaymentStrategy, PayoutStatus
from carshare.models.scheduled_action import ScheduledAction, ScheduledActionType
from carshare.schemas.stripe_payloads import CheckoutSessionSnapshot, PaymentIntentSnapshot
from carshare.services.booking_intake_service import BookingIntakeService
from carshare.services.reconciliation_service import ReconciliationService
from carshare.services.scheduled_transition_service import ScheduledTransitionService
from carshare.services.scheduler_service import SchedulerService
from carshare.services.stripe_event_service import StripeEventService
from tests.factories import (
    REDIRECT_CANCEL,
    REDIRECT_SUCCESS,
    completed_payment_session,
    completed_setup_session,
    make_user,
    stripe_event,
)

PATHS = ("webhook", "redirect", "sweep")
ORDERINGS = list(permutations(PATHS))


def _ids(ordering) -> str:
    return "-".join(ordering)


def _action_counts(db, payment_id: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for row in db.query(ScheduledAction).filter_by(payment_id=payment_id).all():
        counts[row.action] = counts.get(row.action, 0) + 1
    return counts


def _checkout(db, clock, stripe_gateway, renter, car, *, starts_in: timedelta, days: int = 3):
    intake = BookingIntakeService(db, now=clock, stripe_service=stripe_gateway)
    start = clock() + starts_in
    checkout = intake.start_reservation_checkout(
        renter,
        car.id,
        start,
        start + timedelta(days=days - 1),
        success_url=REDIRECT_SUCCESS,
        cancel_url=REDIRECT_CANCEL,
    )
    return db.get(Booking, checkout.booking_id), db.get(Payment, checkout.payment_id)


class Ingestion:
    """Runs one ingestion path for a session the processor reports complete."""

    def __init__(self, db, clock, stripe_gateway, renter, session: Dict):
        self.renter = renter
        self.session = session
        self.events = StripeEventService(db, now=clock, stripe_service=stripe_gateway)
        self.reconciliation = ReconciliationService(db, now=clock, stripe_service=stripe_gateway)
        stripe_gateway.retrieve_checkout_session.return_value = (
            CheckoutSessionSnapshot.model_validate(session)
        )

    def run(self, path: str) -> None:
        if path == "webhook":
            self.events.handle_event(
                stripe_event("checkout.session.completed", self.session, event_id="evt_checkout_done")
            )
        elif path == "redirect":
            self.reconciliation.reconcile_checkout_redirect(self.session["id"], self.renter)
        else:
            self.reconciliation.reconcile_stale_checkouts(older_than=timedelta(0))


@pytest.fixture
def scheduler(db, clock) -> SchedulerService:
    return SchedulerService(db, now=clock)


@pytest.fixture
def engine_service(db, clock, stripe_gateway, scheduler) -> ScheduledTransitionService:
    return ScheduledTransitionService(
        db, now=clock, stripe_service=stripe_gateway, scheduler=scheduler
    )


class TestIngestionOrderIndependence:
    @pytest.mark.parametrize("ordering", ORDERINGS, ids=_ids)
    def test_paid_checkout_converges(
        self, db, clock, renter, car, stripe_gateway, scheduler, engine_service, ordering
    ) -> None:
        booking, payment = _checkout(
            db, clock, stripe_gateway, renter, car, starts_in=timedelta(hours=12), days=14
        )
        assert payment.payment_strategy == PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
        ingestion = Ingestion(
            db,
            clock,
            stripe_gateway,
            renter,
            completed_payment_session(payment.stripe_checkout_session_id, "pi_order"),
        )

        for path in ordering:
            ingestion.run(path)
            ingestion.run(path)

        assert payment.status == PaymentStatus.PAID.value
        assert payment.payout_status == PayoutStatus.ELIGIBLE.value
        assert payment.paid_at == clock()
        assert payment.stripe_payment_intent_id == "pi_order"
        assert booking.status == BookingStatus.CONFIRMED.value
        assert _action_counts(db, payment.id) == {
            ScheduledActionType.RELEASE_PAYOUT.value: 1,
            ScheduledActionType.DEPOSIT_AUTO_REFUND.value: 1,
        }
        stripe_gateway.create_transfer.assert_not_called()
        stripe_gateway.create_refund.assert_not_called()

        clock.set(payment.release_at)
        scheduler.process_due(engine_service.execute)
        scheduler.process_due(engine_service.execute)
        assert stripe_gateway.create_transfer.call_count == 1
        assert booking.status == BookingStatus.COMPLETED.value

    @pytest.mark.parametrize("ordering", ORDERINGS, ids=_ids)
    def test_saved_card_converges(
        self, db, clock, renter, car, stripe_gateway, scheduler, engine_service, ordering
    ) -> None:
        booking, payment = _checkout(db, clock, stripe_gateway, renter, car, starts_in=timedelta(days=10))
        assert payment.payment_strategy == PaymentStrategy.DESTINATION_MANUAL_CAPTURE.value
        ingestion = Ingestion(
            db,
            clock,
            stripe_gateway,
            renter,
            completed_setup_session(payment.stripe_checkout_session_id),
        )

        for path in ordering:
            ingestion.run(path)

        assert payment.status == PaymentStatus.METHOD_SAVED.value
        assert payment.stripe_payment_method_id == "pm_test"
        assert booking.status == BookingStatus.PAYMENT_PENDING.value
        assert _action_counts(db, payment.id) == {ScheduledActionType.AUTO_CHARGE.value: 1}

        clock.set(payment.payment_due_at)
        stripe_gateway.create_off_session_payment_intent.return_value = PaymentIntentSnapshot(
            id="pi_saved", status="requires_capture"
        )
        scheduler.process_due(engine_service.execute)
        scheduler.process_due(engine_service.execute)
        assert stripe_gateway.create_off_session_payment_intent.call_count == 1
        assert booking.status == BookingStatus.CONFIRMED.value


class TestConcurrentIntake:
    """Two renters reserve the same dates on separate sessions; one keeps them."""

    @pytest.fixture
    def other_db(self, engine):
        session = sessionmaker(
            bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
        )()
        try:
            yield session
        finally:
            session.close()

    @pytest.mark.parametrize("first_paid", ["a", "b"])
    def test_only_one_overlapping_booking_is_confirmed(
        self, db, other_db, clock, car, stripe_gateway, first_paid
    ) -> None:
        renter_a = make_user(db, name="Ann")
        renter_b = make_user(db, name="Ben")
        booking_a, payment_a = _checkout(
            db, clock, stripe_gateway, renter_a, car, starts_in=timedelta(hours=12), days=14
        )
        other_car = other_db.merge(car)
        booking_b, payment_b = _checkout(
            other_db,
            clock,
            stripe_gateway,
            other_db.merge(renter_b),
            other_car,
            starts_in=timedelta(hours=18),
            days=14,
        )
        # Neither checkout holds the dates until it is paid
        assert booking_a.status == BookingStatus.PENDING.value
        assert booking_b.status == BookingStatus.PENDING.value

        events = {
            "a": (db, payment_a, "pi_a"),
            "b": (other_db, payment_b, "pi_b"),
        }
        order = [first_paid, "b" if first_paid == "a" else "a"]
        for key in order:
            session, payment, intent_id = events[key]
            StripeEventService(session, now=clock, stripe_service=stripe_gateway).handle_event(
                stripe_event(
                    "checkout.session.completed",
                    completed_payment_session(payment.stripe_checkout_session_id, intent_id),
                    event_id=f"evt_paid_{key}",
                )
            )

        db.expire_all()
        winner_id = (payment_a if first_paid == "a" else payment_b).id
        loser_id = (payment_b if first_paid == "a" else payment_a).id
        winner = db.get(Payment, winner_id)
        loser = db.get(Payment, loser_id)

        assert winner.status == PaymentStatus.PAID.value
        assert db.get(Booking, winner.booking_id).status == BookingStatus.CONFIRMED.value
        assert loser.status == PaymentStatus.CANCELLED.value
        assert db.get(Booking, loser.booking_id).status == BookingStatus.CANCELLED.value
        confirmed = (
            db.query(Booking)
            .filter_by(car_id=car.id, status=BookingStatus.CONFIRMED.value)
            .count()
        )
        assert confirmed == 1
        assert _action_counts(db, loser.id) == {
            ScheduledActionType.REFUND_CONFLICTED_PAYMENT.value: 1
        }
