# backend/carshare/services/payment_transition_service.py
"""
Payment Transition Service

The Payment/Booking state machine shared by webhook ingestion, redirect
reconciliation, the stale sweep and scheduled actions. Every path that
learns a processor fact ends up here, so the same fact produces the same
final state whichever path delivers it first.

Each operation:
- runs in one transaction that updates Payment and Booking together
- is idempotent through ``Payment.last_processed_event_id``
- returns a ``TransitionResult`` instead of raising for benign no-ops
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..domain.booking_policies import can_complete_booking
from ..models.booking import BLOCKING_BOOKING_STATUSES, Booking, BookingStatus
from ..models.payment import (
    PAYABLE_PAYMENT_STATUSES,
    PAYOUT_BLOCKING_STATUSES,
    CaptureStatus,
    DepositStatus,
    Payment,
    PaymentStatus,
    PayoutStatus,
)
from ..models.scheduled_action import ScheduledActionType
from ..repositories import RepositoryFactory
from ..schemas.payment_schemas import TransitionReason, TransitionResult
from ..schemas.stripe_payloads import ChargeSnapshot, PaymentIntentSnapshot
from ..utils.money import quantize_amount, to_cents
from ..utils.time_utils import Clock, as_utc, to_epoch_ms
from .base import BaseService
from .overlap_guard import OverlapGuard
from .scheduler_service import SchedulerService

# Booking statuses that a late payment event must not overwrite
SETTLED_BOOKING_STATUSES = (BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value)

# A paid fact may still land on a payment whose earlier attempt failed
PAID_SOURCE_STATUSES = PAYABLE_PAYMENT_STATUSES | {PaymentStatus.FAILED.value}


@dataclass(frozen=True)
class ReversalPlan:
    """A host transfer that must be pulled back once the transition commits."""

    payment_id: str
    transfer_id: str
    amount: Decimal


@dataclass(frozen=True)
class ChargeAdjustment:
    result: TransitionResult
    reversal: Optional[ReversalPlan] = None


def release_key(payment: Payment) -> str:
    return f"payment-{payment.id}-release-{to_epoch_ms(payment.release_at)}"


def capture_key(payment: Payment) -> str:
    return f"capture-{payment.id}-{to_epoch_ms(payment.release_at)}"


def claim_window_end(payment: Payment):
    if payment.deposit_claim_window_ends_at is not None:
        return payment.deposit_claim_window_ends_at
    return as_utc(payment.release_at) + timedelta(hours=settings.deposit_claim_window_hours)


def deposit_refund_key(payment: Payment) -> str:
    return f"deposit-refund-{payment.id}-{to_epoch_ms(claim_window_end(payment))}"


class PaymentTransitionService(BaseService):
    def __init__(
        self,
        db: Session,
        now: Optional[Clock] = None,
        scheduler: Optional[SchedulerService] = None,
        overlap_guard: Optional[OverlapGuard] = None,
    ):
        super().__init__(db, now)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.car_repository = RepositoryFactory.create_car_repository(db)
        self.scheduler = scheduler or SchedulerService(db, now=now)
        self.overlap_guard = overlap_guard or OverlapGuard(db, now=now)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _ok(payment: Payment, reason: Optional[TransitionReason] = None) -> TransitionResult:
        return TransitionResult.success(
            reason,
            payment_id=payment.id,
            booking_id=payment.booking_id,
            payment_strategy=payment.payment_strategy,
        )

    @staticmethod
    def _fail(reason: TransitionReason, payment: Optional[Payment] = None) -> TransitionResult:
        if payment is None:
            return TransitionResult.failure(reason)
        return TransitionResult.failure(
            reason,
            payment_id=payment.id,
            booking_id=payment.booking_id,
            payment_strategy=payment.payment_strategy,
        )

    @staticmethod
    def _is_duplicate(payment: Payment, event_id: Optional[str]) -> bool:
        return bool(event_id) and payment.last_processed_event_id == event_id

    def _touch(self, payment: Payment, event_id: Optional[str]) -> None:
        if event_id:
            payment.last_processed_event_id = event_id
        payment.updated_at = self.now()

    def _booking_for(self, payment: Payment) -> Optional[Booking]:
        return self.booking_repository.get_by_id(payment.booking_id)

    def _find_by_intent(
        self, payment_intent_id: Optional[str], metadata_payment_id: Optional[str] = None
    ) -> Optional[Payment]:
        payment = None
        if payment_intent_id:
            payment = self.payment_repository.get_by_payment_intent_id(payment_intent_id)
        if payment is None and metadata_payment_id:
            payment = self.payment_repository.get_by_id(metadata_payment_id)
        return payment

    def _find_by_charge(
        self, charge_id: Optional[str], payment_intent_id: Optional[str]
    ) -> Optional[Payment]:
        payment = None
        if charge_id:
            payment = self.payment_repository.get_by_charge_id(charge_id)
        if payment is None and payment_intent_id:
            payment = self.payment_repository.get_by_payment_intent_id(payment_intent_id)
        return payment

    def _conflicts_for(self, booking: Booking) -> List[Booking]:
        # Lock the car so two activations for it serialize on backends with row locks
        self.car_repository.get_by_id(booking.car_id, for_update=True)
        return self.overlap_guard.find_conflicts(
            booking.car_id, booking.start_date, booking.end_date, exclude_booking_id=booking.id
        )

    def cancel_payment_and_booking(
        self, payment: Optional[Payment], booking: Optional[Booking]
    ) -> None:
        """
        Compensating cancel of a Payment/Booking pair. Flushes only.

        Pending scheduled actions for the payment are cancelled too.
        """
        if booking is not None and booking.status not in SETTLED_BOOKING_STATUSES:
            booking.status = BookingStatus.CANCELLED.value
        if payment is not None:
            if payment.status != PaymentStatus.CANCELLED.value:
                payment.status = PaymentStatus.CANCELLED.value
            payment.payout_status = PayoutStatus.BLOCKED.value
            payment.updated_at = self.now()
            self.scheduler.cancel_pending_for_payment(payment.id)
        self.payment_repository.flush()

    def _schedule_deposit_refund(self, payment: Payment) -> None:
        if to_cents(payment.deposit_amount) <= 0:
            return
        self.scheduler.schedule(
            ScheduledActionType.DEPOSIT_AUTO_REFUND,
            claim_window_end(payment),
            payment_id=payment.id,
            dedupe_key=deposit_refund_key(payment),
        )

    def _hold_deposit(self, payment: Payment) -> None:
        if to_cents(payment.deposit_amount) > 0:
            if payment.deposit_status in (None, DepositStatus.NOT_APPLICABLE.value):
                payment.deposit_status = DepositStatus.HELD.value
            if payment.deposit_claim_window_ends_at is None:
                payment.deposit_claim_window_ends_at = claim_window_end(payment)
        else:
            payment.deposit_status = DepositStatus.NOT_APPLICABLE.value

    def _fail_payment(
        self, payment: Payment, booking: Optional[Booking], *, cancel_booking: bool
    ) -> None:
        payment.status = PaymentStatus.FAILED.value
        payment.payout_status = PayoutStatus.BLOCKED.value
        if booking is not None and booking.status not in SETTLED_BOOKING_STATUSES:
            booking.status = (
                BookingStatus.CANCELLED.value if cancel_booking else BookingStatus.PAYMENT_FAILED.value
            )
        self.scheduler.cancel_pending_for_payment(
            payment.id,
            actions=(ScheduledActionType.AUTO_CHARGE, ScheduledActionType.CAPTURE_PAYMENT),
        )

    # ------------------------------------------------------------------ #
    # Payment method collection (setup flow)
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("mark_payment_method_collected")
    def mark_payment_method_collected(
        self,
        *,
        session_id: str,
        event_id: str,
        setup_intent_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Setup session completed: the card is saved for the due-date charge.

        The car's dates are re-checked first. A booking confirmed for the
        same dates in the meantime cancels this Payment/Booking pair.
        """
        with self.transaction():
            payment = self.payment_repository.get_by_checkout_session_id(session_id)
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
            if payment.status == PaymentStatus.PAID.value:
                return self._ok(payment, TransitionReason.ALREADY_PAID)
            if payment.status != PaymentStatus.METHOD_COLLECTION_PENDING.value:
                return self._ok(payment, TransitionReason.PAYMENT_NOT_WAITING_FOR_METHOD)

            booking = self._booking_for(payment)
            if booking is None:
                return self._fail(TransitionReason.BOOKING_NOT_FOUND, payment)

            conflicts = self._conflicts_for(booking)
            if conflicts:
                self.logger.warning(
                    f"Booking {booking.id} lost its dates to {conflicts[0].id} before the "
                    f"payment method was saved; cancelling"
                )
                self._touch(payment, event_id)
                self.cancel_payment_and_booking(payment, booking)
                return self._fail(TransitionReason.BOOKING_CONFLICT_ON_ACTIVATION, payment)

            payment.status = PaymentStatus.METHOD_SAVED.value
            payment.stripe_setup_intent_id = setup_intent_id or payment.stripe_setup_intent_id
            payment.stripe_payment_method_id = payment_method_id or payment.stripe_payment_method_id
            payment.stripe_customer_id = customer_id or payment.stripe_customer_id
            self._touch(payment, event_id)
            booking.status = BookingStatus.PAYMENT_PENDING.value

            due_at = payment.payment_due_at or self.now()
            run_at = max(as_utc(due_at), self.now())
            self.scheduler.schedule(
                ScheduledActionType.AUTO_CHARGE,
                run_at,
                payment_id=payment.id,
                dedupe_key=f"auto-charge-{payment.id}-{to_epoch_ms(due_at)}",
            )
            self.logger.info(f"Payment method saved for payment {payment.id}")
            return self._ok(payment)

    @BaseService.measure_operation("mark_checkout_session_expired")
    def mark_checkout_session_expired(
        self, *, session_id: str, mode: Optional[str], event_id: str
    ) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_checkout_session_id(session_id)
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)

            waiting = payment.status in (
                PaymentStatus.METHOD_COLLECTION_PENDING.value,
                PaymentStatus.CHECKOUT_CREATED.value,
            )
            if waiting and mode in ("setup", "payment"):
                self._touch(payment, event_id)
                self.cancel_payment_and_booking(payment, self._booking_for(payment))
                self.logger.info(f"Checkout {session_id} expired; payment {payment.id} cancelled")
                return self._ok(payment, TransitionReason.CANCELLED)

            self._touch(payment, event_id)
            return self._ok(payment, TransitionReason.NOT_APPLICABLE)

    # ------------------------------------------------------------------ #
    # Paid / authorized
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("mark_paid_by_session")
    def mark_paid_by_session(
        self,
        session_id: str,
        *,
        event_id: str,
        payment_intent_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_checkout_session_id(session_id)
            return self._apply_paid(
                payment, payment_intent_id=payment_intent_id, charge_id=charge_id, event_id=event_id
            )

    @BaseService.measure_operation("mark_paid_by_payment_id")
    def mark_paid_by_payment_id(
        self,
        payment_id: str,
        *,
        event_id: str,
        payment_intent_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            return self._apply_paid(
                payment, payment_intent_id=payment_intent_id, charge_id=charge_id, event_id=event_id
            )

    @BaseService.measure_operation("mark_paid_by_payment_intent")
    def mark_paid_by_payment_intent(
        self,
        payment_intent_id: str,
        *,
        event_id: str,
        charge_id: Optional[str] = None,
    ) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_payment_intent_id(payment_intent_id)
            return self._apply_paid(
                payment, payment_intent_id=payment_intent_id, charge_id=charge_id, event_id=event_id
            )

    def _apply_paid(
        self,
        payment: Optional[Payment],
        *,
        payment_intent_id: Optional[str],
        charge_id: Optional[str],
        event_id: str,
    ) -> TransitionResult:
        """
        Money was collected (fallback) or authorized (manual capture).

        Runs inside the caller's transaction.
        """
        if payment is None:
            return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
        if self._is_duplicate(payment, event_id):
            return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
        if payment.status == PaymentStatus.PAID.value:
            return self._ok(payment, TransitionReason.ALREADY_PAID)
        if payment.status == PaymentStatus.CANCELLED.value:
            self.logger.warning(f"Paid fact for cancelled payment {payment.id} ignored")
            return self._fail(TransitionReason.CANCELLED, payment)
        if payment.is_manual_capture and payment.capture_status == CaptureStatus.PENDING_CAPTURE.value:
            return self._ok(payment, TransitionReason.ALREADY_AUTHORIZED)
        if payment.status not in PAID_SOURCE_STATUSES:
            return self._fail(TransitionReason.PAYMENT_NOT_PAYABLE, payment)

        booking = self._booking_for(payment)
        if booking is None:
            return self._fail(TransitionReason.BOOKING_NOT_FOUND, payment)

        payment.stripe_payment_intent_id = payment_intent_id or payment.stripe_payment_intent_id
        payment.stripe_charge_id = charge_id or payment.stripe_charge_id
        self._touch(payment, event_id)

        # Bookings that never held their dates are re-checked before activation
        if booking.status not in BLOCKING_BOOKING_STATUSES:
            conflicts = self._conflicts_for(booking)
            if conflicts:
                self.logger.warning(
                    f"Payment {payment.id} collected but booking {booking.id} conflicts with "
                    f"{conflicts[0].id}; cancelling and returning funds"
                )
                self.cancel_payment_and_booking(payment, booking)
                self.scheduler.schedule(
                    ScheduledActionType.REFUND_CONFLICTED_PAYMENT,
                    self.now(),
                    payment_id=payment.id,
                    dedupe_key=f"conflict-refund-{payment.id}",
                )
                return self._fail(TransitionReason.BOOKING_CONFLICT_ON_ACTIVATION, payment)

        self.scheduler.cancel_pending_for_payment(
            payment.id, actions=(ScheduledActionType.AUTO_CHARGE,)
        )

        if payment.is_manual_capture:
            payment.capture_status = CaptureStatus.PENDING_CAPTURE.value
            booking.status = BookingStatus.CONFIRMED.value
            self.scheduler.schedule(
                ScheduledActionType.CAPTURE_PAYMENT,
                payment.release_at,
                payment_id=payment.id,
                dedupe_key=capture_key(payment),
            )
            self.logger.info(f"Payment {payment.id} authorized; capture due at trip end")
            return self._ok(payment)

        payment.status = PaymentStatus.PAID.value
        payment.payout_status = PayoutStatus.ELIGIBLE.value
        payment.paid_at = payment.paid_at or self.now()
        self._hold_deposit(payment)
        booking.status = BookingStatus.CONFIRMED.value
        self.scheduler.schedule(
            ScheduledActionType.RELEASE_PAYOUT,
            payment.release_at,
            payment_id=payment.id,
            dedupe_key=release_key(payment),
        )
        self._schedule_deposit_refund(payment)
        self.logger.info(f"Payment {payment.id} paid; payout eligible at {payment.release_at}")
        return self._ok(payment)

    # ------------------------------------------------------------------ #
    # Payment intent lifecycle
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("mark_payment_intent_succeeded")
    def mark_payment_intent_succeeded(
        self, intent: PaymentIntentSnapshot, *, event_id: str
    ) -> TransitionResult:
        """Captured funds: the final capture for manual capture, payment for fallback."""
        with self.transaction():
            payment = self._find_by_intent(intent.id, intent.metadata.get("paymentId"))
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if payment.is_manual_capture:
                return self._apply_captured(payment, charge_id=intent.latest_charge, event_id=event_id)
            return self._apply_paid(
                payment,
                payment_intent_id=intent.id,
                charge_id=intent.latest_charge,
                event_id=event_id,
            )

    @BaseService.measure_operation("mark_authorization_capturable")
    def mark_authorization_capturable(
        self, intent: PaymentIntentSnapshot, *, event_id: str
    ) -> TransitionResult:
        """``amount_capturable_updated``: the manual-capture hold is in place."""
        with self.transaction():
            payment = self._find_by_intent(intent.id, intent.metadata.get("paymentId"))
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
            if not payment.is_manual_capture:
                return self._fail(TransitionReason.STRATEGY_MISMATCH, payment)
            if payment.status in PAYABLE_PAYMENT_STATUSES:
                # Same transition the completed checkout would apply
                return self._apply_paid(
                    payment,
                    payment_intent_id=intent.id,
                    charge_id=intent.latest_charge,
                    event_id=event_id,
                )
            self._touch(payment, event_id)
            return self._ok(payment, TransitionReason.NOT_APPLICABLE)

    @BaseService.measure_operation("mark_authorization_cancelled")
    def mark_authorization_cancelled(
        self, intent: PaymentIntentSnapshot, *, event_id: str
    ) -> TransitionResult:
        """``payment_intent.canceled`` for a manual-capture hold."""
        with self.transaction():
            payment = self._find_by_intent(intent.id, intent.metadata.get("paymentId"))
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
            if not payment.is_manual_capture:
                return self._fail(TransitionReason.STRATEGY_MISMATCH, payment)
            if payment.status == PaymentStatus.CANCELLED.value:
                return self._ok(payment, TransitionReason.CANCELLED)
            if payment.status == PaymentStatus.PAID.value or payment.status in PAYOUT_BLOCKING_STATUSES:
                return self._ok(payment, TransitionReason.ALREADY_PAID)

            expired = "expired" in (intent.cancellation_reason or "").lower()
            payment.capture_status = (
                CaptureStatus.EXPIRED.value if expired else CaptureStatus.CAPTURE_FAILED.value
            )
            self._fail_payment(payment, self._booking_for(payment), cancel_booking=False)
            self._touch(payment, event_id)
            self.logger.warning(
                f"Authorization for payment {payment.id} cancelled "
                f"({intent.cancellation_reason or 'no reason'})"
            )
            return self._ok(payment)

    @BaseService.measure_operation("mark_payment_failed")
    def mark_payment_failed(
        self, intent: PaymentIntentSnapshot, *, event_id: str
    ) -> TransitionResult:
        """
        A charge attempt was declined.

        Before the due instant a saved-card payment stays recoverable, so
        only bookkeeping changes. Past the due instant the booking is
        cancelled; otherwise it becomes ``payment_failed``.
        """
        with self.transaction():
            payment = self._find_by_intent(intent.id, intent.metadata.get("paymentId"))
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
            if payment.status == PaymentStatus.PAID.value or payment.status in PAYOUT_BLOCKING_STATUSES:
                return self._ok(payment, TransitionReason.ALREADY_PAID)
            if payment.status == PaymentStatus.CANCELLED.value:
                return self._ok(payment, TransitionReason.CANCELLED)

            now = self.now()
            due_passed = payment.payment_due_at is not None and now >= as_utc(payment.payment_due_at)
            method_stage = payment.status in (
                PaymentStatus.METHOD_SAVED.value,
                PaymentStatus.METHOD_COLLECTION_PENDING.value,
            )
            payment.stripe_payment_intent_id = payment.stripe_payment_intent_id or intent.id

            if payment.status == PaymentStatus.METHOD_SAVED.value and not due_passed:
                self._touch(payment, event_id)
                self.logger.info(
                    f"Payment {payment.id} charge failed before due date; keeping booking"
                )
                return self._ok(payment, TransitionReason.NOT_APPLICABLE)

            self._fail_payment(
                payment, self._booking_for(payment), cancel_booking=due_passed and method_stage
            )
            self._touch(payment, event_id)
            return self._ok(payment)

    # ------------------------------------------------------------------ #
    # Scheduled-action outcomes
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("mark_auto_charge_failed")
    def mark_auto_charge_failed(
        self, payment_id: str, *, event_id: str, missing_method: bool = False
    ) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
            if payment.status != PaymentStatus.METHOD_SAVED.value:
                return self._ok(payment, TransitionReason.NOT_APPLICABLE)
            self._fail_payment(payment, self._booking_for(payment), cancel_booking=missing_method)
            self._touch(payment, event_id)
            return self._ok(payment)

    @BaseService.measure_operation("mark_captured")
    def mark_captured(
        self, payment_id: str, *, event_id: str, charge_id: Optional[str] = None
    ) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            return self._apply_captured(payment, charge_id=charge_id, event_id=event_id)

    def _apply_captured(
        self, payment: Payment, *, charge_id: Optional[str], event_id: str
    ) -> TransitionResult:
        """Capture moved the host's share to their account: paid and transferred at once."""
        if self._is_duplicate(payment, event_id):
            return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
        if not payment.is_manual_capture:
            return self._fail(TransitionReason.STRATEGY_MISMATCH, payment)
        if (
            payment.status == PaymentStatus.PAID.value
            and payment.capture_status == CaptureStatus.CAPTURED.value
        ):
            return self._ok(payment, TransitionReason.ALREADY_PAID)
        if payment.status == PaymentStatus.CANCELLED.value:
            return self._fail(TransitionReason.CANCELLED, payment)
        if payment.status in PAYOUT_BLOCKING_STATUSES:
            return self._ok(payment, TransitionReason.NOT_APPLICABLE)

        now = self.now()
        payment.status = PaymentStatus.PAID.value
        payment.capture_status = CaptureStatus.CAPTURED.value
        payment.payout_status = PayoutStatus.TRANSFERRED.value
        payment.paid_at = payment.paid_at or now
        payment.stripe_charge_id = charge_id or payment.stripe_charge_id
        self._hold_deposit(payment)
        self._touch(payment, event_id)

        booking = self._booking_for(payment)
        if can_complete_booking(booking):
            booking.status = BookingStatus.COMPLETED.value
            booking.completed_at = booking.completed_at or now

        self.scheduler.cancel_pending_for_payment(
            payment.id, actions=(ScheduledActionType.CAPTURE_PAYMENT,)
        )
        self._schedule_deposit_refund(payment)
        self.logger.info(f"Payment {payment.id} captured; host share settled at capture")
        return self._ok(payment)

    @BaseService.measure_operation("mark_capture_failed")
    def mark_capture_failed(
        self, payment_id: str, *, event_id: str, expired: bool
    ) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
            if payment.status == PaymentStatus.PAID.value:
                return self._ok(payment, TransitionReason.ALREADY_PAID)
            payment.capture_status = (
                CaptureStatus.EXPIRED.value if expired else CaptureStatus.CAPTURE_FAILED.value
            )
            self._fail_payment(payment, self._booking_for(payment), cancel_booking=False)
            self._touch(payment, event_id)
            return self._ok(payment)

    # ------------------------------------------------------------------ #
    # Charges, refunds and disputes
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("attach_charge")
    def attach_charge(self, charge: ChargeSnapshot, *, event_id: str) -> TransitionResult:
        with self.transaction():
            payment = self._find_by_charge(charge.id, charge.payment_intent)
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            if self._is_duplicate(payment, event_id):
                return self._ok(payment, TransitionReason.DUPLICATE_EVENT)
            payment.stripe_charge_id = charge.id
            payment.stripe_payment_intent_id = (
                payment.stripe_payment_intent_id or charge.payment_intent
            )
            self._touch(payment, event_id)
            return self._ok(payment)

    @BaseService.measure_operation("apply_charge_refund")
    def apply_charge_refund(self, charge: ChargeSnapshot, *, event_id: str) -> ChargeAdjustment:
        """
        Record a refund reported on a charge.

        A partial refund of exactly the deposit is read as the deposit
        auto-refund and leaves the rental status alone.
        """
        with self.transaction():
            payment = self._find_by_charge(charge.id, charge.payment_intent)
            if payment is None:
                return ChargeAdjustment(self._fail(TransitionReason.PAYMENT_NOT_FOUND))
            if self._is_duplicate(payment, event_id):
                return ChargeAdjustment(self._ok(payment, TransitionReason.DUPLICATE_EVENT))

            refunded_cents = charge.amount_refunded
            if refunded_cents <= 0:
                self._touch(payment, event_id)
                return ChargeAdjustment(self._ok(payment, TransitionReason.NOT_APPLICABLE))

            is_partial = refunded_cents < charge.captured_cents
            deposit_cents = to_cents(payment.deposit_amount)
            is_deposit_refund = (
                is_partial
                and deposit_cents > 0
                and refunded_cents == deposit_cents
                and payment.deposit_status
                in (
                    DepositStatus.HELD.value,
                    DepositStatus.REFUND_PENDING.value,
                    DepositStatus.REFUNDED.value,
                )
            )

            if is_deposit_refund:
                payment.deposit_status = DepositStatus.REFUNDED.value
                payment.deposit_refund_amount = quantize_amount(payment.deposit_amount)
                self._touch(payment, event_id)
                self.logger.info(f"Deposit refund recorded for payment {payment.id}")
                return ChargeAdjustment(self._ok(payment))

            prior_transfer_id = payment.stripe_transfer_id
            was_transferred = payment.payout_status == PayoutStatus.TRANSFERRED.value

            payment.status = (
                PaymentStatus.PARTIALLY_REFUNDED.value if is_partial else PaymentStatus.REFUNDED.value
            )
            if not was_transferred:
                payment.payout_status = PayoutStatus.BLOCKED.value
            if not is_partial and deposit_cents > 0:
                payment.deposit_status = DepositStatus.REFUNDED.value
                payment.deposit_refund_amount = quantize_amount(payment.deposit_amount)
            self.scheduler.cancel_pending_for_payment(payment.id)
            self._touch(payment, event_id)

            reversal = None
            if prior_transfer_id and was_transferred and not is_partial:
                reversal = ReversalPlan(
                    payment_id=payment.id,
                    transfer_id=prior_transfer_id,
                    amount=quantize_amount(payment.host_amount),
                )
            self.logger.info(
                f"Payment {payment.id} {payment.status} ({refunded_cents} of "
                f"{charge.captured_cents} cents)"
            )
            return ChargeAdjustment(self._ok(payment), reversal)

    @BaseService.measure_operation("mark_disputed")
    def mark_disputed(
        self,
        *,
        charge_id: Optional[str],
        payment_intent_id: Optional[str],
        event_id: str,
    ) -> ChargeAdjustment:
        with self.transaction():
            payment = self._find_by_charge(charge_id, payment_intent_id)
            if payment is None:
                return ChargeAdjustment(self._fail(TransitionReason.PAYMENT_NOT_FOUND))
            if self._is_duplicate(payment, event_id):
                return ChargeAdjustment(self._ok(payment, TransitionReason.DUPLICATE_EVENT))

            prior_transfer_id = payment.stripe_transfer_id
            was_transferred = payment.payout_status == PayoutStatus.TRANSFERRED.value

            payment.status = PaymentStatus.DISPUTED.value
            if not was_transferred:
                payment.payout_status = PayoutStatus.BLOCKED.value
            self.scheduler.cancel_pending_for_payment(
                payment.id,
                actions=(ScheduledActionType.RELEASE_PAYOUT, ScheduledActionType.DEPOSIT_AUTO_REFUND),
            )
            self._touch(payment, event_id)

            reversal = None
            if prior_transfer_id and was_transferred:
                reversal = ReversalPlan(
                    payment_id=payment.id,
                    transfer_id=prior_transfer_id,
                    amount=quantize_amount(payment.host_amount),
                )
            self.logger.warning(f"Payment {payment.id} disputed")
            return ChargeAdjustment(self._ok(payment), reversal)

    @BaseService.measure_operation("record_transfer_reversal")
    def record_transfer_reversal(self, payment_id: str, reversal_id: str) -> TransitionResult:
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            if payment is None:
                return self._fail(TransitionReason.PAYMENT_NOT_FOUND)
            payment.payout_status = PayoutStatus.REVERSED.value
            payment.stripe_transfer_reversal_id = reversal_id
            payment.updated_at = self.now()
            return self._ok(payment)
