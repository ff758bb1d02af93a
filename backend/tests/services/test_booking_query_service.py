"""Tests for the renter and host read projections."""

from datetime import timedelta
from decimal import Decimal

import pytest

from carshare.models.booking import BookingStatus
from carshare.models.payment import DepositStatus, PaymentStatus, PayoutStatus
from carshare.services.booking_query_service import BookingQueryService
from carshare.services.deposit_case_service import DepositCaseService
from tests.factories import make_booking_with_payment, make_car, make_host, make_user


@pytest.fixture
def queries(db, clock) -> BookingQueryService:
    return BookingQueryService(db, now=clock)


def _lockbox_booking(db, car, renter, start):
    booking, payment = make_booking_with_payment(db, car, renter, start=start)
    booking.collection_method = "lockbox"
    booking.collection_lockbox_instructions = car.collection_lockbox_instructions
    booking.collection_lockbox_code = car.collection_lockbox_code
    db.commit()
    return booking, payment


class TestGetBookingDetails:
    def test_renter_waits_for_lockbox_code(self, db, clock, car, renter, queries) -> None:
        booking, _ = _lockbox_booking(db, car, renter, clock() + timedelta(hours=5))

        details = queries.get_booking_details(renter, booking.id)

        assert details.viewer_role == "renter"
        assert details.collection.method == "lockbox"
        assert details.collection.instructions == "Lockbox on the garage door"
        assert details.collection.lockbox_code is None
        assert details.collection.is_lockbox_code_visible is False
        assert details.collection.lockbox_code_visible_at == clock() + timedelta(hours=3)

        clock.advance(hours=3)
        details = queries.get_booking_details(renter, booking.id)
        assert details.collection.lockbox_code == "4821"
        assert details.collection.is_lockbox_code_visible is True

    def test_host_always_sees_lockbox_code(self, db, clock, car, renter, host, queries) -> None:
        booking, _ = _lockbox_booking(db, car, renter, clock() + timedelta(days=4))
        details = queries.get_booking_details(host.user, booking.id)
        assert details.viewer_role == "host"
        assert details.collection.lockbox_code == "4821"
        assert details.renter_user.name == "Rita Renter"

    def test_in_person_has_no_code(self, db, clock, car, renter, queries) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(hours=1))
        details = queries.get_booking_details(renter, booking.id)
        assert details.collection.method == "in_person"
        assert details.collection.lockbox_code is None
        assert details.collection.lockbox_code_visible_at is None

    def test_hidden_from_everyone_else(self, db, clock, car, renter, queries) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(days=1))
        assert queries.get_booking_details(make_user(db), booking.id) is None
        assert queries.get_booking_details(renter, "missing") is None

    def test_payout_retry_flag_is_host_only(self, db, clock, car, renter, host, queries) -> None:
        booking, _ = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=5),
            booking_status=BookingStatus.COMPLETED.value,
            payout_status=PayoutStatus.ERROR.value,
        )
        assert queries.get_booking_details(host.user, booking.id).payment.can_retry_payout is True
        assert queries.get_booking_details(renter, booking.id).payment.can_retry_payout is False


class TestListMyTrips:
    def test_trip_flags(self, db, clock, car, renter, host, queries) -> None:
        waiting, _ = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() + timedelta(days=5),
            booking_status=BookingStatus.PAYMENT_PENDING.value,
            payment_status=PaymentStatus.METHOD_SAVED.value,
            payout_status=PayoutStatus.BLOCKED.value,
        )
        paid, _ = make_booking_with_payment(
            db, make_car(db, host), renter, start=clock() + timedelta(days=1)
        )
        make_booking_with_payment(db, make_car(db, host), make_user(db), start=clock())

        trips = queries.list_my_trips_with_payments(renter)

        by_id = {item.booking.id: item for item in trips.items}
        assert set(by_id) == {waiting.id, paid.id}
        assert by_id[waiting.id].can_pay_now is True
        assert by_id[waiting.id].can_cancel is True
        assert by_id[paid.id].can_pay_now is False
        assert by_id[paid.id].can_cancel is False
        assert by_id[paid.id].host_user.name == "Hana Host"
        assert by_id[paid.id].payment.total_amount == Decimal("530.00")

    def test_pay_now_closes_at_due_time(self, db, clock, car, renter, queries) -> None:
        _, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() + timedelta(days=5),
            booking_status=BookingStatus.PAYMENT_PENDING.value,
            payment_status=PaymentStatus.METHOD_SAVED.value,
        )
        clock.set(payment.payment_due_at)
        assert queries.list_my_trips_with_payments(renter).items[0].can_pay_now is False

    def test_no_trips(self, renter, queries) -> None:
        assert queries.list_my_trips_with_payments(renter).items == []


class TestListHostBookings:
    def test_deposit_case_flag(self, db, clock, car, renter, host, queries) -> None:
        finished, finished_payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=3),
            booking_status=BookingStatus.COMPLETED.value,
        )
        upcoming, _ = make_booking_with_payment(
            db, make_car(db, host), renter, start=clock() + timedelta(days=2)
        )

        listing = queries.list_host_bookings_with_payouts(host.user)
        flags = {item.booking.id: item.can_file_deposit_case for item in listing.items}
        assert flags == {finished.id: True, upcoming.id: False}

        DepositCaseService(db, now=clock).file_deposit_case(host.user, finished.id, reason="Scratch")
        listing = queries.list_host_bookings_with_payouts(host.user)
        flags = {item.booking.id: item.can_file_deposit_case for item in listing.items}
        assert flags[finished.id] is False
        assert finished_payment.deposit_status == DepositStatus.CASE_SUBMITTED.value

    def test_closed_claim_window(self, db, clock, car, renter, host, queries) -> None:
        _, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=3),
            booking_status=BookingStatus.COMPLETED.value,
        )
        clock.set(payment.deposit_claim_window_ends_at)
        item = queries.list_host_bookings_with_payouts(host.user).items[0]
        assert item.can_file_deposit_case is False
        assert item.renter.name == "Rita Renter"

    def test_other_hosts_see_nothing(self, db, clock, car, renter, queries) -> None:
        make_booking_with_payment(db, car, renter, start=clock() + timedelta(days=2))
        assert queries.list_host_bookings_with_payouts(make_host(db).user).items == []
        assert queries.list_host_bookings_with_payouts(renter).items == []
