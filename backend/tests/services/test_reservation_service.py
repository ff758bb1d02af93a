"""Tests for renter and host actions on an existing reservation."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from carshare.core.exceptions import (
    NotFoundException,
    PaymentProcessorException,
    UnauthorizedException,
    ValidationException,
)
from carshare.models.booking import Booking, BookingStatus
from carshare.models.payment import Payment, PaymentStatus, PaymentStrategy, PayoutStatus
from carshare.models.scheduled_action import ScheduledAction, ScheduledActionStatus, ScheduledActionType
from carshare.services.reservation_service import ReservationService
from carshare.services.scheduled_transition_service import ScheduledTransitionService
from carshare.services.scheduler_service import SchedulerService
from tests.factories import make_booking_with_payment, make_host, make_user


@pytest.fixture
def scheduler(db, clock) -> SchedulerService:
    return SchedulerService(db, now=clock)


@pytest.fixture
def reservations(db, clock, stripe_gateway, scheduler) -> ReservationService:
    scheduled = ScheduledTransitionService(
        db, now=clock, stripe_service=stripe_gateway, scheduler=scheduler
    )
    return ReservationService(
        db, now=clock, scheduler=scheduler, scheduled_transitions=scheduled
    )


def _awaiting_charge(db, clock, car, renter):
    return make_booking_with_payment(
        db,
        car,
        renter,
        start=clock() + timedelta(days=5),
        booking_status=BookingStatus.PAYMENT_PENDING.value,
        payment_status=PaymentStatus.METHOD_SAVED.value,
        payout_status=PayoutStatus.BLOCKED.value,
        stripe_payment_intent_id=None,
        stripe_charge_id=None,
    )


class TestCancelReservation:
    def test_renter_cancels_before_charge(self, db, clock, car, renter, scheduler, reservations) -> None:
        booking, payment = _awaiting_charge(db, clock, car, renter)
        action = scheduler.schedule(
            ScheduledActionType.AUTO_CHARGE, payment.payment_due_at, payment_id=payment.id
        )
        db.commit()

        response = reservations.cancel_reservation(renter, booking.id)

        assert response.ok is True
        assert response.already_cancelled is False
        assert response.booking_status == BookingStatus.CANCELLED.value
        assert response.payment_status == PaymentStatus.CANCELLED.value
        assert payment.payout_status == PayoutStatus.BLOCKED.value
        assert db.get(ScheduledAction, action.id).status == ScheduledActionStatus.CANCELLED.value

    def test_host_may_cancel(self, db, clock, car, renter, host, reservations) -> None:
        booking, _ = _awaiting_charge(db, clock, car, renter)
        response = reservations.cancel_reservation(host.user, booking.id)
        assert response.booking_status == BookingStatus.CANCELLED.value

    def test_cancelling_twice_reports_already_cancelled(
        self, db, clock, car, renter, reservations
    ) -> None:
        booking, _ = _awaiting_charge(db, clock, car, renter)
        reservations.cancel_reservation(renter, booking.id)
        response = reservations.cancel_reservation(renter, booking.id)
        assert response.already_cancelled is True
        assert response.payment_status == PaymentStatus.CANCELLED.value

    def test_paid_reservation_cannot_be_cancelled(self, db, clock, car, renter, reservations) -> None:
        booking, payment = make_booking_with_payment(db, car, renter, start=clock() + timedelta(days=5))
        with pytest.raises(ValidationException):
            reservations.cancel_reservation(renter, booking.id)
        assert booking.status == BookingStatus.CONFIRMED.value
        assert payment.status == PaymentStatus.PAID.value

    def test_payment_committed_after_load_blocks_cancel(
        self, db, engine, clock, car, renter, reservations
    ) -> None:
        booking, payment = _awaiting_charge(db, clock, car, renter)
        load_participants = reservations._load_participants

        def load_then_pay_elsewhere(booking_id):
            loaded = load_participants(booking_id)
            # A webhook worker on its own session records the charge meanwhile
            other = sessionmaker(bind=engine, expire_on_commit=False)()
            try:
                paid = other.get(Payment, payment.id)
                paid.status = PaymentStatus.PAID.value
                paid.payout_status = PayoutStatus.ELIGIBLE.value
                other.get(Booking, booking.id).status = BookingStatus.CONFIRMED.value
                other.commit()
            finally:
                other.close()
            return loaded

        with patch.object(reservations, "_load_participants", side_effect=load_then_pay_elsewhere):
            with pytest.raises(ValidationException, match="cannot be cancelled"):
                reservations.cancel_reservation(renter, booking.id)

        db.expire_all()
        assert db.get(Booking, booking.id).status == BookingStatus.CONFIRMED.value
        stored = db.get(Payment, payment.id)
        assert stored.status == PaymentStatus.PAID.value
        assert stored.payout_status == PayoutStatus.ELIGIBLE.value

    def test_strangers_cannot_cancel(self, db, clock, car, renter, reservations) -> None:
        booking, _ = _awaiting_charge(db, clock, car, renter)
        with pytest.raises(UnauthorizedException):
            reservations.cancel_reservation(make_user(db), booking.id)

    def test_missing_booking(self, renter, reservations) -> None:
        with pytest.raises(NotFoundException):
            reservations.cancel_reservation(renter, "missing")


class TestConfirmTripStartCollection:
    def test_too_early(self, db, clock, car, renter, reservations) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(hours=3))
        with pytest.raises(ValidationException, match="near the trip start"):
            reservations.confirm_trip_start_collection(renter, booking.id)

    def test_host_confirmation_does_not_start_trip(self, db, clock, car, renter, host, reservations) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(hours=1))
        response = reservations.confirm_trip_start_collection(host.user, booking.id)
        assert response.status == BookingStatus.CONFIRMED.value
        assert response.host_collection_confirmed_at == clock()
        assert response.renter_collection_confirmed_at is None
        assert response.trip_started_at is None

    def test_renter_confirmation_starts_trip(self, db, clock, car, renter, reservations) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(hours=2))
        response = reservations.confirm_trip_start_collection(renter, booking.id)
        assert response.status == BookingStatus.IN_PROGRESS.value
        assert response.trip_started_at == clock()
        assert response.lockbox_code_visible_at == clock()
        assert booking.status == BookingStatus.IN_PROGRESS.value

    def test_second_confirmation_keeps_first_timestamp(self, db, clock, car, renter, reservations) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(hours=1))
        first = reservations.confirm_trip_start_collection(renter, booking.id)
        clock.advance(minutes=30)
        second = reservations.confirm_trip_start_collection(renter, booking.id)
        assert second.trip_started_at == first.trip_started_at

    def test_unpaid_booking_cannot_start(self, db, clock, car, renter, reservations) -> None:
        booking, _ = _awaiting_charge(db, clock, car, renter)
        with pytest.raises(ValidationException, match="unavailable"):
            reservations.confirm_trip_start_collection(renter, booking.id)

    def test_strangers_cannot_confirm(self, db, clock, car, renter, reservations) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(hours=1))
        with pytest.raises(UnauthorizedException):
            reservations.confirm_trip_start_collection(make_user(db), booking.id)


class TestCompleteBookingIfEnded:
    def test_reasons(self, db, clock, car, renter, reservations) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() - timedelta(days=1))

        assert reservations.complete_booking_if_ended("missing").reason == "not_found"
        assert reservations.complete_booking_if_ended(booking.id).reason == "trip_not_ended"

        clock.set(booking.end_date)
        result = reservations.complete_booking_if_ended(booking.id)
        assert result.completed is True
        assert result.reason == "completed"
        assert booking.completed_at == clock()

        assert reservations.complete_booking_if_ended(booking.id).reason == "already_completed"

    @pytest.mark.parametrize(
        "status",
        [
            BookingStatus.CANCELLED.value,
            BookingStatus.PAYMENT_PENDING.value,
            BookingStatus.PAYMENT_FAILED.value,
        ],
    )
    def test_only_held_trips_complete(self, db, clock, car, renter, reservations, status) -> None:
        booking, _ = make_booking_with_payment(
            db, car, renter, start=clock() - timedelta(days=5), booking_status=status
        )

        result = reservations.complete_booking_if_ended(booking.id)

        assert result.completed is False
        assert result.reason == "not_completable"
        assert booking.status == status
        assert booking.completed_at is None

    def test_in_progress_trip_completes(self, db, clock, car, renter, reservations) -> None:
        booking, _ = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=5),
            booking_status=BookingStatus.IN_PROGRESS.value,
        )
        assert reservations.complete_booking_if_ended(booking.id).reason == "completed"
        assert booking.status == BookingStatus.COMPLETED.value


class TestRetryHostPayoutTransfer:
    @pytest.fixture
    def failed_payout(self, db, clock, car, renter):
        return make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=5),
            booking_status=BookingStatus.COMPLETED.value,
            payout_status=PayoutStatus.ERROR.value,
        )

    def test_retry_transfers(self, host, failed_payout, reservations, stripe_gateway) -> None:
        booking, payment = failed_payout
        response = reservations.retry_host_payout_transfer(host.user, booking.id)

        assert response.released is True
        assert response.transfer_id == "tr_test"
        assert response.payout_status == PayoutStatus.TRANSFERRED.value
        kwargs = stripe_gateway.create_transfer.call_args.kwargs
        assert kwargs["destination"] == "acct_test_host"

    def test_retry_failure_reports_error(self, host, failed_payout, reservations, stripe_gateway) -> None:
        stripe_gateway.create_transfer.side_effect = PaymentProcessorException(
            "PROCESSOR_ERROR: Failed to create transfer: insufficient funds"
        )
        booking, _ = failed_payout
        response = reservations.retry_host_payout_transfer(host.user, booking.id)
        assert response.released is False
        assert response.reason == "transfer_failed"
        assert response.payout_status == PayoutStatus.ERROR.value

    def test_not_retryable_before_release(self, db, clock, car, renter, host, reservations) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(days=1))
        with pytest.raises(ValidationException, match="not retryable"):
            reservations.retry_host_payout_transfer(host.user, booking.id)

    def test_destination_charges_are_not_retryable(self, db, clock, car, renter, host, reservations) -> None:
        booking, _ = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=5),
            strategy=PaymentStrategy.DESTINATION_MANUAL_CAPTURE.value,
        )
        with pytest.raises(ValidationException):
            reservations.retry_host_payout_transfer(host.user, booking.id)

    def test_only_owning_host(self, db, renter, failed_payout, reservations) -> None:
        booking, _ = failed_payout
        with pytest.raises(UnauthorizedException, match="Host account required"):
            reservations.retry_host_payout_transfer(renter, booking.id)
        with pytest.raises(UnauthorizedException, match="cannot retry"):
            reservations.retry_host_payout_transfer(make_host(db).user, booking.id)
