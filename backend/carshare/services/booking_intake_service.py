# backend/carshare/services/booking_intake_service.py
"""
Booking Intake Service

Creates the Booking + Payment pair for a reservation and opens the Stripe
Checkout session that starts collecting funds:

- trips starting within the payment lead time pay immediately (payment mode)
- later trips save a card now (setup mode) and are auto-charged at the due date

Pricing, strategy selection and the overlap check all happen here, in the
same transaction that inserts the records.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    NotFoundException,
    PaymentProcessorException,
    ServiceException,
    UnauthorizedException,
    UnavailableException,
    ValidationException,
)
from ..domain.booking_policies import calculate_billable_days, can_pay_now_for_booking
from ..domain.collection_methods import resolve_selected_collection_method
from ..domain.payment_strategy import select_payment_strategy
from ..models.booking import Booking, BookingStatus, CollectionMethod
from ..models.car import Car
from ..models.payment import (
    CaptureStatus,
    DepositStatus,
    Payment,
    PaymentStatus,
    PayoutStatus,
)
from ..models.user import User
from ..repositories import RepositoryFactory
from ..schemas.booking_schemas import PayNowResponse, ReservationCheckoutResponse
from ..schemas.stripe_payloads import CheckoutSessionSnapshot
from ..utils.money import quantize_amount, round_whole, to_decimal
from ..utils.time_utils import Clock, as_utc, to_epoch_ms
from ..utils.url_validation import assert_allowed_redirect_url
from .base import BaseService
from .overlap_guard import OverlapGuard
from .payment_transition_service import PaymentTransitionService
from .stripe_service import PURPOSE_INITIAL_PAYMENT, PURPOSE_PAY_NOW, StripeService


@dataclass(frozen=True)
class PendingReservation:
    """Result of ``create_pending_payment``: ids plus the computed pricing."""

    booking: Booking
    payment: Payment
    car: Car
    days: int
    requires_immediate_payment: bool

    @property
    def car_name(self) -> str:
        return self.car.title or f"{self.car.make or ''} {self.car.model or ''}".strip()


def compute_platform_fee(rental_amount: Decimal) -> Decimal:
    """Platform fee in whole currency units."""
    return round_whole(rental_amount * to_decimal(settings.platform_fee_percentage) / 100)


class BookingIntakeService(BaseService):
    def __init__(
        self,
        db: Session,
        now: Optional[Clock] = None,
        stripe_service: Optional[StripeService] = None,
        overlap_guard: Optional[OverlapGuard] = None,
        transitions: Optional[PaymentTransitionService] = None,
    ):
        super().__init__(db, now)
        self.car_repository = RepositoryFactory.create_car_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.stripe_service = stripe_service or StripeService(db, now=now)
        self.overlap_guard = overlap_guard or OverlapGuard(db, now=now)
        self.transitions = transitions or PaymentTransitionService(
            db, now=now, overlap_guard=self.overlap_guard
        )

    # ------------------------------------------------------------------ #
    # Pending reservation
    # ------------------------------------------------------------------ #

    def _validate_window(self, car: Car, start: datetime, end: datetime) -> None:
        if car.available_from is not None and as_utc(start) < as_utc(car.available_from):
            raise ValidationException("INVALID_INPUT: Selected period is before car availability.")
        if car.available_until is not None and as_utc(end) > as_utc(car.available_until):
            raise ValidationException("INVALID_INPUT: Selected period is after car availability.")

    @BaseService.measure_operation("create_pending_payment")
    def create_pending_payment(
        self,
        user: User,
        car_id: str,
        start: datetime,
        end: datetime,
        *,
        collection_method: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> PendingReservation:
        """
        Price the trip and insert Booking (``pending``) and Payment
        (``method_collection_pending``).

        Raises:
            NotFoundException: car missing or inactive
            ValidationException: bad range or outside availability
            BookingConflictException: another booking holds the dates
            UnauthorizedException: renter owns the listing
            UnavailableException: host cannot receive payouts yet
        """
        with self.transaction():
            car = self.car_repository.get_by_id(car_id, for_update=True)
            if car is None or not car.is_active:
                raise NotFoundException("NOT_FOUND: Car not available.")

            days = calculate_billable_days(start, end)
            self._validate_window(car, start, end)
            self.overlap_guard.assert_bookable(car.id, start, end)

            host = car.host
            if host is None:
                raise NotFoundException("NOT_FOUND: Host not found.")
            if host.user_id == user.id:
                raise UnauthorizedException("UNAUTHORIZED: You cannot book your own listing.")
            if not host.can_receive_payouts:
                raise UnavailableException(
                    "UNAVAILABLE: Host has not completed payout onboarding yet."
                )

            rental_amount = quantize_amount(to_decimal(car.price_per_day) * days)
            platform_fee = compute_platform_fee(rental_amount)
            host_amount = rental_amount - platform_fee
            deposit_amount = quantize_amount(car.deposit_amount)
            release_at = as_utc(end)
            payment_due_at = as_utc(start) - timedelta(hours=settings.payment_due_lead_hours)
            claim_window_ends_at = release_at + timedelta(hours=settings.deposit_claim_window_hours)
            selection = select_payment_strategy(days)

            method = resolve_selected_collection_method(collection_method, car.collection_methods)
            booking = self.booking_repository.create(
                car_id=car.id,
                renter_id=user.id,
                start_date=as_utc(start),
                end_date=release_at,
                status=BookingStatus.PENDING.value,
                total_price=rental_amount,
                collection_method=method,
                collection_in_person_instructions=car.collection_in_person_instructions,
                collection_lockbox_instructions=car.collection_lockbox_instructions,
                collection_lockbox_code=(
                    car.collection_lockbox_code
                    if method == CollectionMethod.LOCKBOX.value
                    else None
                ),
                collection_delivery_instructions=car.collection_delivery_instructions,
            )
            payment = self.payment_repository.create(
                booking_id=booking.id,
                car_id=car.id,
                renter_id=user.id,
                host_id=host.id,
                stripe_customer_id=user.stripe_customer_id,
                currency=(currency or settings.stripe_currency).lower(),
                payment_strategy=selection.strategy.value,
                capture_status=CaptureStatus.NOT_REQUIRED.value,
                rental_amount=rental_amount,
                platform_fee_amount=platform_fee,
                host_amount=host_amount,
                deposit_amount=deposit_amount,
                deposit_status=DepositStatus.NOT_APPLICABLE.value,
                deposit_claim_window_ends_at=claim_window_ends_at,
                payment_due_at=payment_due_at,
                status=PaymentStatus.METHOD_COLLECTION_PENDING.value,
                payout_status=PayoutStatus.BLOCKED.value,
                release_at=release_at,
            )
            booking.payment_id = payment.id

        self.logger.info(
            f"Created pending booking {booking.id} / payment {payment.id} for car {car.id}: "
            f"{days} days, strategy={payment.payment_strategy}"
        )
        return PendingReservation(
            booking=booking,
            payment=payment,
            car=car,
            days=days,
            requires_immediate_payment=as_utc(payment_due_at) <= self.now(),
        )

    # ------------------------------------------------------------------ #
    # Stripe customer and session
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("ensure_stripe_customer_for_renter")
    def ensure_stripe_customer_for_renter(self, user: User, payment: Payment) -> str:
        """Reuse the renter's Stripe customer, creating it on first checkout."""
        if user.stripe_customer_id:
            if payment.stripe_customer_id != user.stripe_customer_id:
                with self.transaction():
                    payment.stripe_customer_id = user.stripe_customer_id
            return user.stripe_customer_id

        customer_id = self.stripe_service.create_customer(
            renter_id=user.id, email=user.email, name=user.name
        )
        with self.transaction():
            user.stripe_customer_id = customer_id
            payment.stripe_customer_id = customer_id
            payment.updated_at = self.now()
        return customer_id

    @BaseService.measure_operation("attach_checkout_session")
    def attach_checkout_session(
        self, payment: Payment, booking: Booking, session: CheckoutSessionSnapshot
    ) -> None:
        """
        Record the session id on both records.

        A payment-mode session moves the Payment to ``checkout_created``; a
        setup-mode Payment stays ``method_collection_pending``.
        """
        with self.transaction():
            payment.stripe_checkout_session_id = session.id
            if (
                session.mode == "payment"
                and payment.status == PaymentStatus.METHOD_COLLECTION_PENDING.value
            ):
                payment.status = PaymentStatus.CHECKOUT_CREATED.value
            payment.updated_at = self.now()
            booking.checkout_session_id = session.id

    def _cancel_after_failed_session(self, reservation: PendingReservation) -> None:
        with self.transaction():
            self.transitions.cancel_payment_and_booking(reservation.payment, reservation.booking)

    def _host_destination(self, payment: Payment) -> Optional[str]:
        if not payment.is_manual_capture or payment.host is None:
            return None
        return payment.host.stripe_connect_account_id

    @BaseService.measure_operation("start_reservation_checkout")
    def start_reservation_checkout(
        self,
        user: User,
        car_id: str,
        start: datetime,
        end: datetime,
        *,
        success_url: str,
        cancel_url: str,
        collection_method: Optional[str] = None,
    ) -> ReservationCheckoutResponse:
        """
        Reserve the car and open the Checkout session the renter completes.

        If Stripe refuses the session the fresh Booking/Payment pair is
        cancelled so it does not hold the car's dates.
        """
        if not settings.enable_connect_payouts:
            raise UnavailableException("UNAVAILABLE: Connect payouts are currently disabled.")
        success_url = assert_allowed_redirect_url(success_url, "success_url")
        cancel_url = assert_allowed_redirect_url(cancel_url, "cancel_url")

        reservation = self.create_pending_payment(
            user, car_id, start, end, collection_method=collection_method
        )
        payment = reservation.payment
        booking = reservation.booking

        try:
            self.ensure_stripe_customer_for_renter(user, payment)
            if reservation.requires_immediate_payment:
                session = self.stripe_service.create_payment_checkout_session(
                    payment,
                    car_name=reservation.car_name,
                    days=reservation.days,
                    success_url=success_url,
                    cancel_url=cancel_url,
                    idempotency_key=f"reservation-initial-payment-{payment.id}",
                    purpose=PURPOSE_INITIAL_PAYMENT,
                    destination_account_id=self._host_destination(payment),
                )
            else:
                session = self.stripe_service.create_setup_checkout_session(
                    payment,
                    success_url=success_url,
                    cancel_url=cancel_url,
                    idempotency_key=f"reservation-setup-{payment.id}",
                )
        except (PaymentProcessorException, ServiceException):
            self.logger.warning(
                f"Checkout creation failed for payment {payment.id}; releasing booking {booking.id}"
            )
            self._cancel_after_failed_session(reservation)
            raise

        self.attach_checkout_session(payment, booking, session)
        return ReservationCheckoutResponse(
            booking_id=booking.id,
            payment_id=payment.id,
            url=session.url,
            payment_strategy=payment.payment_strategy,
            subtotal=payment.rental_amount,
            service_fee=payment.platform_fee_amount,
            host_amount=payment.host_amount,
            deposit_amount=payment.deposit_amount,
            total=payment.total_amount,
            requires_immediate_payment=reservation.requires_immediate_payment,
            payment_due_at=payment.payment_due_at,
        )

    @BaseService.measure_operation("create_reservation_pay_now_session")
    def create_reservation_pay_now_session(
        self,
        user: User,
        booking_id: str,
        *,
        success_url: str,
        cancel_url: str,
    ) -> PayNowResponse:
        """
        Let a renter with a saved card pay before the auto-charge fires.

        Raises:
            NotFoundException: booking or payment missing
            UnauthorizedException: booking belongs to another renter
            ValidationException: already paid, not ready, or deadline passed
        """
        success_url = assert_allowed_redirect_url(success_url, "success_url")
        cancel_url = assert_allowed_redirect_url(cancel_url, "cancel_url")

        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("NOT_FOUND: Booking not found.")
        if booking.renter_id != user.id:
            raise UnauthorizedException("UNAUTHORIZED: This booking does not belong to you.")
        payment = self.payment_repository.get_by_booking_id(booking.id)
        if payment is None:
            raise NotFoundException("NOT_FOUND: Booking payment not found.")
        if payment.status == PaymentStatus.PAID.value:
            raise ValidationException("INVALID_INPUT: Reservation is already paid.")
        now = self.now()
        if (
            booking.status != BookingStatus.PAYMENT_PENDING.value
            or payment.status != PaymentStatus.METHOD_SAVED.value
        ):
            raise ValidationException("INVALID_INPUT: Reservation is not ready for pay now.")
        if not can_pay_now_for_booking(booking, payment, now):
            raise ValidationException("INVALID_INPUT: Payment deadline has passed.")

        self.ensure_stripe_customer_for_renter(user, payment)
        car = booking.car
        session = self.stripe_service.create_payment_checkout_session(
            payment,
            car_name=(car.title if car is not None else "Car"),
            days=calculate_billable_days(booking.start_date, booking.end_date),
            success_url=success_url,
            cancel_url=cancel_url,
            idempotency_key=f"reservation-pay-now-{payment.id}-{to_epoch_ms(now)}",
            purpose=PURPOSE_PAY_NOW,
            destination_account_id=self._host_destination(payment),
        )
        self.attach_checkout_session(payment, booking, session)
        self.logger.info(f"Opened pay-now checkout {session.id} for payment {payment.id}")
        return PayNowResponse(
            url=session.url,
            booking_id=booking.id,
            payment_id=payment.id,
            payment_due_at=payment.payment_due_at,
            total=payment.total_amount,
        )
