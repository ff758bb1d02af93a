# backend/carshare/services/reservation_service.py
"""
Reservation Service

Renter and host actions on an existing reservation: cancelling it,
confirming the car was collected, retrying a failed payout, and marking a
finished trip completed.
"""

from __future__ import annotations

from typing import Optional, Tuple

from sqlalchemy.orm import Session

from ..core.exceptions import NotFoundException, UnauthorizedException, ValidationException
from ..domain.booking_policies import (
    can_cancel_reservation,
    can_retry_payout_for_host,
    lockbox_code_visible_at,
)
from ..models.booking import Booking, BookingStatus
from ..models.host import Host
from ..models.payment import PaymentStatus, PayoutStatus
from ..models.user import User
from ..repositories import RepositoryFactory
from ..schemas.booking_schemas import (
    BookingCompletionResult,
    CancelReservationResponse,
    CollectionConfirmationResponse,
    PayoutRetryResponse,
)
from ..utils.time_utils import Clock
from .base import BaseService
from .scheduled_transition_service import ScheduledTransitionService
from .scheduler_service import SchedulerService


class ReservationService(BaseService):
    def __init__(
        self,
        db: Session,
        now: Optional[Clock] = None,
        scheduler: Optional[SchedulerService] = None,
        scheduled_transitions: Optional[ScheduledTransitionService] = None,
    ):
        super().__init__(db, now)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.host_repository = RepositoryFactory.create_host_repository(db)
        self.scheduler = scheduler or SchedulerService(db, now=now)
        self._scheduled_transitions = scheduled_transitions

    @property
    def scheduled_transitions(self) -> ScheduledTransitionService:
        if self._scheduled_transitions is None:
            self._scheduled_transitions = ScheduledTransitionService(
                self.db, now=self._clock, scheduler=self.scheduler
            )
        return self._scheduled_transitions

    def _load_participants(self, booking_id: str) -> Tuple[Booking, Host]:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("NOT_FOUND: Booking not found.")
        car = booking.car
        if car is None:
            raise NotFoundException("NOT_FOUND: Car not found for booking.")
        host = car.host
        if host is None:
            raise NotFoundException("NOT_FOUND: Host not found for booking.")
        return booking, host

    @BaseService.measure_operation("cancel_reservation")
    def cancel_reservation(self, user: User, booking_id: str) -> CancelReservationResponse:
        """
        Self-service cancel, allowed only before money has been captured.

        Raises:
            NotFoundException: booking, car or host missing
            UnauthorizedException: caller is neither renter nor host
            ValidationException: the cancellation policy refuses
        """
        booking, host = self._load_participants(booking_id)
        if user.id not in (booking.renter_id, host.user_id):
            raise UnauthorizedException("UNAUTHORIZED: You cannot cancel this reservation.")

        with self.transaction():
            # Re-read under lock: a paid webhook may have committed since the load above
            booking = self.booking_repository.get_by_id(booking.id, for_update=True)
            payment = self.payment_repository.get_by_booking_id(booking.id)
            if payment is not None:
                payment = self.payment_repository.get_by_id(payment.id, for_update=True)

            if booking.status == BookingStatus.CANCELLED.value:
                return CancelReservationResponse(
                    booking_id=booking.id,
                    already_cancelled=True,
                    booking_status=booking.status,
                    payment_status=payment.status if payment else None,
                )
            if not can_cancel_reservation(booking, payment):
                raise ValidationException("INVALID_INPUT: This reservation cannot be cancelled.")

            booking.status = BookingStatus.CANCELLED.value
            if payment is not None:
                if payment.status != PaymentStatus.CANCELLED.value:
                    payment.status = PaymentStatus.CANCELLED.value
                    payment.payout_status = PayoutStatus.BLOCKED.value
                    payment.updated_at = self.now()
                self.scheduler.cancel_pending_for_payment(payment.id)

        self.logger.info(f"User {user.id} cancelled booking {booking.id}")
        return CancelReservationResponse(
            booking_id=booking.id,
            already_cancelled=False,
            booking_status=booking.status,
            payment_status=payment.status if payment else None,
        )

    @BaseService.measure_operation("confirm_trip_start_collection")
    def confirm_trip_start_collection(
        self, user: User, booking_id: str
    ) -> CollectionConfirmationResponse:
        """
        Host or renter confirms the car changed hands.

        The renter's confirmation starts the trip (``confirmed → in_progress``).
        """
        booking, host = self._load_participants(booking_id)
        is_renter = booking.renter_id == user.id
        is_host = host.user_id == user.id
        if not is_renter and not is_host:
            raise UnauthorizedException("UNAUTHORIZED: You cannot confirm this trip start.")
        if booking.status not in (BookingStatus.CONFIRMED.value, BookingStatus.IN_PROGRESS.value):
            raise ValidationException(
                "INVALID_INPUT: Trip start confirmation is unavailable for this booking."
            )

        visible_at = lockbox_code_visible_at(booking)
        now = self.now()
        if now < visible_at:
            raise ValidationException(
                "INVALID_INPUT: Trip collection can be confirmed only near the trip start."
            )

        with self.transaction():
            if is_host and booking.host_collection_confirmed_at is None:
                booking.host_collection_confirmed_at = now
            if is_renter:
                if booking.renter_collection_confirmed_at is None:
                    booking.renter_collection_confirmed_at = now
                if booking.status == BookingStatus.CONFIRMED.value:
                    booking.status = BookingStatus.IN_PROGRESS.value
                if booking.trip_started_at is None:
                    booking.trip_started_at = now

        return CollectionConfirmationResponse(
            booking_id=booking.id,
            status=booking.status,
            host_collection_confirmed_at=booking.host_collection_confirmed_at,
            renter_collection_confirmed_at=booking.renter_collection_confirmed_at,
            trip_started_at=booking.trip_started_at,
            lockbox_code_visible_at=visible_at,
        )

    def complete_booking_if_ended(self, booking_id: str) -> BookingCompletionResult:
        return self.scheduled_transitions.complete_booking_if_ended(booking_id)

    @BaseService.measure_operation("retry_host_payout_transfer")
    def retry_host_payout_transfer(self, user: User, booking_id: str) -> PayoutRetryResponse:
        """
        Re-run payout release for the owning host.

        Raises:
            UnauthorizedException: caller is not the car's host
            NotFoundException: booking or payment missing
            ValidationException: payout is not retryable yet
        """
        host = self.host_repository.get_by_user_id(user.id)
        if host is None:
            raise UnauthorizedException("UNAUTHORIZED: Host account required.")
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("NOT_FOUND: Booking not found.")
        if booking.car is None or booking.car.host_id != host.id:
            raise UnauthorizedException("UNAUTHORIZED: You cannot retry this payout.")
        payment = self.payment_repository.get_by_booking_id(booking.id)
        if payment is None:
            raise NotFoundException("NOT_FOUND: Payment not found for booking.")
        if not can_retry_payout_for_host(payment, self.now()):
            raise ValidationException("INVALID_INPUT: Payout is not retryable yet.")

        result = self.scheduled_transitions.release_host_payout(payment.id)
        self.db.refresh(payment)
        return PayoutRetryResponse(
            booking_id=booking.id,
            released=result.released,
            reason=result.reason,
            transfer_id=result.transfer_id,
            payout_status=payment.payout_status,
        )
