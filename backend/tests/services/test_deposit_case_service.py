"""Tests for filing and resolving deposit cases."""

from datetime import timedelta
from decimal import Decimal

import pytest

from carshare.core.exceptions import (
    ForbiddenException,
    NotFoundException,
    UnauthorizedException,
    ValidationException,
)
from carshare.models.booking import BookingStatus
from carshare.models.deposit_case import DepositCase, DepositCaseResolution, DepositCaseStatus
from carshare.models.payment import DepositStatus, PayoutStatus
from carshare.services.deposit_case_service import DepositCaseService
from tests.factories import make_booking_with_payment, make_car, make_host


@pytest.fixture
def cases(db, clock) -> DepositCaseService:
    return DepositCaseService(db, now=clock)


@pytest.fixture
def finished_trip(db, clock, car, renter):
    """Trip ended yesterday; claim window open for two more days."""
    return make_booking_with_payment(
        db,
        car,
        renter,
        start=clock() - timedelta(days=3),
        booking_status=BookingStatus.COMPLETED.value,
        payout_status=PayoutStatus.TRANSFERRED.value,
    )


class TestFileDepositCase:
    def test_files_case_for_full_deposit(self, db, cases, host, finished_trip) -> None:
        booking, payment = finished_trip
        response = cases.file_deposit_case(host.user, booking.id, reason="  Cracked mirror  ")

        assert response.requested_amount == Decimal("200.00")
        assert payment.deposit_status == DepositStatus.CASE_SUBMITTED.value
        deposit_case = db.get(DepositCase, response.case_id)
        assert deposit_case.status == DepositCaseStatus.OPEN.value
        assert deposit_case.reason == "Cracked mirror"
        assert deposit_case.renter_id == booking.renter_id

    @pytest.mark.parametrize(
        "requested, expected",
        [(Decimal("75.50"), Decimal("75.50")), (Decimal("900"), Decimal("200.00")), (Decimal("-5"), Decimal("0.00"))],
    )
    def test_requested_amount_is_clamped(self, cases, host, finished_trip, requested, expected) -> None:
        booking, _ = finished_trip
        response = cases.file_deposit_case(
            host.user, booking.id, reason="Damage", requested_amount=requested
        )
        assert response.requested_amount == expected

    def test_blank_reason_gets_placeholder(self, db, cases, host, finished_trip) -> None:
        booking, _ = finished_trip
        response = cases.file_deposit_case(host.user, booking.id, reason="   ")
        assert db.get(DepositCase, response.case_id).reason == "No reason provided"

    def test_second_case_is_refused(self, db, cases, host, finished_trip) -> None:
        booking, payment = finished_trip
        cases.file_deposit_case(host.user, booking.id, reason="Damage")
        # Put the deposit back to held to reach the active-case check
        payment.deposit_status = DepositStatus.HELD.value
        db.commit()
        with pytest.raises(ValidationException, match="already exists"):
            cases.file_deposit_case(host.user, booking.id, reason="More damage")

    def test_claim_window_closed(self, cases, clock, host, finished_trip) -> None:
        booking, payment = finished_trip
        clock.set(payment.deposit_claim_window_ends_at)
        with pytest.raises(ValidationException, match="claim window has ended"):
            cases.file_deposit_case(host.user, booking.id, reason="Late")

    def test_trip_not_completed(self, db, clock, cases, car, renter, host) -> None:
        booking, _ = make_booking_with_payment(db, car, renter, start=clock() + timedelta(days=2))
        with pytest.raises(ValidationException, match="after trip completion"):
            cases.file_deposit_case(host.user, booking.id, reason="Early")

    def test_no_deposit(self, db, clock, cases, renter, host) -> None:
        free_car = make_car(db, host, deposit_amount="0.00")
        booking, _ = make_booking_with_payment(
            db,
            free_car,
            renter,
            start=clock() - timedelta(days=3),
            booking_status=BookingStatus.COMPLETED.value,
        )
        with pytest.raises(ValidationException, match="no deposit"):
            cases.file_deposit_case(host.user, booking.id, reason="Damage")

    def test_only_the_owning_host(self, db, cases, renter, finished_trip) -> None:
        booking, _ = finished_trip
        with pytest.raises(UnauthorizedException):
            cases.file_deposit_case(renter, booking.id, reason="Not a host")
        with pytest.raises(UnauthorizedException):
            cases.file_deposit_case(make_host(db).user, booking.id, reason="Wrong host")

    def test_missing_booking(self, cases, host) -> None:
        with pytest.raises(NotFoundException):
            cases.file_deposit_case(host.user, "missing", reason="Damage")


class TestResolveDepositCase:
    @pytest.fixture
    def open_case(self, cases, host, finished_trip):
        booking, _ = finished_trip
        return cases.file_deposit_case(
            host.user, booking.id, reason="Dent", requested_amount=Decimal("120.00")
        )

    @pytest.mark.parametrize(
        "resolution, case_status, deposit_status, amount",
        [
            (DepositCaseResolution.APPROVE, DepositCaseStatus.APPROVED, DepositStatus.RETAINED, "120.00"),
            (
                DepositCaseResolution.PARTIAL,
                DepositCaseStatus.PARTIALLY_APPROVED,
                DepositStatus.PARTIALLY_REFUNDED,
                "60.00",
            ),
            (DepositCaseResolution.REJECT, DepositCaseStatus.REJECTED, DepositStatus.REFUNDED, "0.00"),
        ],
    )
    def test_default_amounts(
        self, cases, support_user, finished_trip, open_case, resolution, case_status, deposit_status, amount
    ) -> None:
        _, payment = finished_trip
        response = cases.resolve_deposit_case(support_user, open_case.case_id, resolution)
        assert response.status == case_status.value
        assert response.resolution_amount == Decimal(amount)
        assert response.deposit_status == deposit_status.value
        assert payment.deposit_status == deposit_status.value

    def test_explicit_amount_is_clamped_and_note_appended(
        self, db, clock, cases, support_user, open_case
    ) -> None:
        response = cases.resolve_deposit_case(
            support_user,
            open_case.case_id,
            DepositCaseResolution.PARTIAL,
            resolution_amount=Decimal("999"),
            reviewer_note="Photos confirm the dent",
        )
        assert response.resolution_amount == Decimal("200.00")
        deposit_case = db.get(DepositCase, open_case.case_id)
        assert deposit_case.reason == "Dent\n[Support note] Photos confirm the dent"
        assert deposit_case.resolved_by_user_id == support_user.id
        assert deposit_case.resolved_at == clock()

    def test_cannot_resolve_twice(self, cases, support_user, open_case) -> None:
        cases.resolve_deposit_case(support_user, open_case.case_id, DepositCaseResolution.REJECT)
        with pytest.raises(ValidationException, match="already resolved"):
            cases.resolve_deposit_case(support_user, open_case.case_id, DepositCaseResolution.APPROVE)

    def test_review_then_resolve(self, cases, support_user, open_case) -> None:
        reviewed = cases.mark_case_under_review(support_user, open_case.case_id)
        assert reviewed.status == DepositCaseStatus.UNDER_REVIEW.value
        response = cases.resolve_deposit_case(support_user, open_case.case_id, "approve")
        assert response.status == DepositCaseStatus.APPROVED.value

    def test_support_only(self, cases, host, open_case) -> None:
        with pytest.raises(ForbiddenException):
            cases.resolve_deposit_case(host.user, open_case.case_id, DepositCaseResolution.APPROVE)

    def test_unknown_case(self, cases, support_user) -> None:
        with pytest.raises(NotFoundException):
            cases.resolve_deposit_case(support_user, "missing", DepositCaseResolution.APPROVE)


class TestListForPayment:
    def test_visible_to_host_and_support(self, db, cases, host, support_user, renter, finished_trip) -> None:
        booking, payment = finished_trip
        cases.file_deposit_case(host.user, booking.id, reason="Dent")

        assert len(cases.list_for_payment(host.user, payment.id)) == 1
        assert len(cases.list_for_payment(support_user, payment.id)) == 1
        with pytest.raises(ForbiddenException):
            cases.list_for_payment(renter, payment.id)
        with pytest.raises(ForbiddenException):
            cases.list_for_payment(make_host(db).user, payment.id)

    def test_rejected_cases_are_not_active(self, cases, host, support_user, finished_trip) -> None:
        booking, payment = finished_trip
        filed = cases.file_deposit_case(host.user, booking.id, reason="Dent")
        cases.resolve_deposit_case(support_user, filed.case_id, DepositCaseResolution.REJECT)
        assert cases.list_for_payment(support_user, payment.id) == []
