# backend/carshare/services/booking_query_service.py
"""
Read projections of Booking + Payment + DepositCase state for renters and
hosts. Nothing here writes to the database.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

from ..domain.booking_policies import (
    can_cancel_reservation,
    can_pay_now_for_booking,
    can_retry_payout_for_host,
    lockbox_code_visible_at,
)
from ..domain.collection_methods import normalize_collection_methods
from ..models.booking import Booking, BookingStatus, CollectionMethod
from ..models.car import Car
from ..models.payment import DepositStatus, Payment
from ..models.user import User
from ..repositories import RepositoryFactory
from ..schemas.booking_schemas import (
    BookingDetailsResponse,
    BookingPaymentDetails,
    BookingSummary,
    CarSummary,
    CollectionDetails,
    HostBookingList,
    HostBookingListItem,
    TripList,
    TripListItem,
    UserSummary,
)
from ..schemas.payment_schemas import PaymentSummary
from ..utils.money import to_cents
from ..utils.time_utils import Clock, as_utc
from .base import BaseService


def booking_summary(booking: Booking) -> BookingSummary:
    return BookingSummary(
        id=booking.id,
        status=booking.status,
        start_date=booking.start_date,
        end_date=booking.end_date,
        total_price=booking.total_price,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
    )


def car_summary(car: Optional[Car]) -> Optional[CarSummary]:
    if car is None:
        return None
    return CarSummary(
        id=car.id,
        title=car.title,
        make=car.make,
        model=car.model,
        year=car.year,
        price_per_day=car.price_per_day,
    )


def user_summary(user: Optional[User]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(id=user.id, name=user.name)


def collection_instructions(booking: Booking, method: str) -> Optional[str]:
    if method == CollectionMethod.LOCKBOX.value:
        return booking.collection_lockbox_instructions
    if method == CollectionMethod.HOST_DELIVERY.value:
        return booking.collection_delivery_instructions
    return booking.collection_in_person_instructions


class BookingQueryService(BaseService):
    def __init__(self, db: Session, now: Optional[Clock] = None):
        super().__init__(db, now)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.host_repository = RepositoryFactory.create_host_repository(db)
        self.car_repository = RepositoryFactory.create_car_repository(db)
        self.deposit_case_repository = RepositoryFactory.create_deposit_case_repository(db)

    def _payments_by_booking(self, booking_ids: Iterable[str]) -> Dict[str, Payment]:
        return {
            payment.booking_id: payment
            for payment in self.payment_repository.list_by_booking_ids(list(booking_ids))
        }

    @BaseService.measure_operation("list_my_trips_with_payments")
    def list_my_trips_with_payments(self, user: User) -> TripList:
        """The renter's bookings, newest first."""
        bookings = self.booking_repository.list_for_renter(user.id)
        payments = self._payments_by_booking(booking.id for booking in bookings)
        now = self.now()

        items = []
        for booking in bookings:
            payment = payments.get(booking.id)
            car = booking.car
            host_user = car.host.user if car is not None and car.host is not None else None
            items.append(
                TripListItem(
                    booking=booking_summary(booking),
                    car=car_summary(car),
                    host_user=user_summary(host_user),
                    payment=PaymentSummary.from_payment(payment) if payment else None,
                    can_pay_now=can_pay_now_for_booking(booking, payment, now),
                    can_cancel=can_cancel_reservation(booking, payment),
                )
            )
        return TripList(items=items)

    @BaseService.measure_operation("get_booking_details")
    def get_booking_details(self, user: User, booking_id: str) -> Optional[BookingDetailsResponse]:
        """
        Booking as seen by its host or renter; ``None`` for anyone else.

        The host always sees the lockbox code; the renter only once the
        reveal window opens.
        """
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None or booking.car is None or booking.car.host is None:
            return None
        car = booking.car
        host = car.host
        is_renter = booking.renter_id == user.id
        is_host = host.user_id == user.id
        if not is_renter and not is_host:
            return None

        now = self.now()
        payment = self.payment_repository.get_by_booking_id(booking.id)
        payment_details = None
        if payment is not None:
            payment_details = BookingPaymentDetails(
                **PaymentSummary.from_payment(payment).model_dump(),
                can_retry_payout=is_host and can_retry_payout_for_host(payment, now),
            )

        method = normalize_collection_methods([booking.collection_method])[0]
        visible_at = None
        is_code_visible = False
        if method == CollectionMethod.LOCKBOX.value:
            visible_at = lockbox_code_visible_at(booking)
            is_code_visible = is_host or now >= visible_at

        return BookingDetailsResponse(
            viewer_role="host" if is_host else "renter",
            booking=booking_summary(booking),
            car=car_summary(car),
            host_user=user_summary(host.user),
            renter_user=user_summary(booking.renter),
            payment=payment_details,
            can_cancel=can_cancel_reservation(booking, payment),
            can_pay_now=is_renter and can_pay_now_for_booking(booking, payment, now),
            collection=CollectionDetails(
                method=method,
                instructions=collection_instructions(booking, method),
                host_collection_confirmed_at=booking.host_collection_confirmed_at,
                renter_collection_confirmed_at=booking.renter_collection_confirmed_at,
                trip_started_at=booking.trip_started_at,
                lockbox_code=booking.collection_lockbox_code if is_code_visible else None,
                lockbox_code_visible_at=visible_at,
                is_lockbox_code_visible=is_code_visible,
            ),
        )

    @BaseService.measure_operation("list_host_bookings_with_payouts")
    def list_host_bookings_with_payouts(self, user: User) -> HostBookingList:
        """Payments for the host's cars, newest first."""
        host = self.host_repository.get_by_user_id(user.id)
        if host is None:
            return HostBookingList()
        car_ids = self.car_repository.list_ids_for_host(host.id)
        payments = [
            payment
            for payment in self.payment_repository.list_for_cars(car_ids)
            if payment.host_id == host.id
        ]
        if not payments:
            return HostBookingList()

        open_case_payment_ids = self.deposit_case_repository.list_active_payment_ids_for_host(host.id)
        now = self.now()
        items = []
        for payment in payments:
            booking = payment.booking
            can_file = bool(
                booking is not None
                and booking.status == BookingStatus.COMPLETED.value
                and to_cents(payment.deposit_amount) > 0
                and payment.deposit_status == DepositStatus.HELD.value
                and payment.deposit_claim_window_ends_at is not None
                and now < as_utc(payment.deposit_claim_window_ends_at)
                and payment.id not in open_case_payment_ids
            )
            items.append(
                HostBookingListItem(
                    payment=PaymentSummary.from_payment(payment),
                    booking=booking_summary(booking) if booking is not None else None,
                    car=car_summary(payment.car),
                    renter=user_summary(booking.renter) if booking is not None else None,
                    can_file_deposit_case=can_file,
                    can_cancel=can_cancel_reservation(booking, payment),
                )
            )
        return HostBookingList(items=items)
