# backend/carshare/services/scheduled_transition_service.py
"""
Scheduled Transition Engine

Handlers for the durable actions the scheduler fires days after they were
scheduled:

- auto-charge at the payment due instant (saved-card flow)
- capture at trip end (manual capture)
- payout release at trip end (platform transfer fallback)
- deposit auto-refund when the claim window closes
- refund of a payment whose booking lost its dates on activation

Each handler re-reads the payment and re-checks its gate, because the
world may have moved on since the action was scheduled. Processor calls
happen outside of any open transaction and carry a stable idempotency key.
A transient processor failure propagates so the scheduler can retry.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import PaymentProcessorException
from ..domain.booking_policies import can_complete_booking
from ..models.booking import BookingStatus
from ..models.payment import (
    PAYOUT_BLOCKING_STATUSES,
    CaptureStatus,
    DepositStatus,
    Payment,
    PaymentStatus,
    PaymentStrategy,
    PayoutStatus,
)
from ..models.scheduled_action import ScheduledAction, ScheduledActionType
from ..repositories import RepositoryFactory
from ..schemas.booking_schemas import BookingCompletionResult
from ..schemas.payment_schemas import (
    AutoChargeResult,
    CaptureResult,
    ConflictRefundResult,
    DepositRefundResult,
    PayoutReleaseResult,
)
from ..utils.money import quantize_amount, to_cents
from ..utils.time_utils import Clock, as_utc, to_epoch_ms
from .base import BaseService
from .payment_transition_service import (
    PaymentTransitionService,
    capture_key,
    claim_window_end,
    deposit_refund_key,
    release_key,
)
from .scheduler_service import SchedulerService
from .stripe_service import StripeService


class ScheduledTransitionService(BaseService):
    def __init__(
        self,
        db: Session,
        now: Optional[Clock] = None,
        stripe_service: Optional[StripeService] = None,
        scheduler: Optional[SchedulerService] = None,
        transitions: Optional[PaymentTransitionService] = None,
    ):
        super().__init__(db, now)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.deposit_case_repository = RepositoryFactory.create_deposit_case_repository(db)
        self.stripe_service = stripe_service or StripeService(db, now=now)
        self.scheduler = scheduler or SchedulerService(db, now=now)
        self.transitions = transitions or PaymentTransitionService(
            db, now=now, scheduler=self.scheduler
        )

    def execute(self, action: ScheduledAction) -> Dict[str, Any]:
        """Dispatch one claimed scheduled action to its handler."""
        handlers = {
            ScheduledActionType.AUTO_CHARGE.value: self.run_auto_charge,
            ScheduledActionType.CAPTURE_PAYMENT.value: self.capture_payment,
            ScheduledActionType.RELEASE_PAYOUT.value: self.release_host_payout,
            ScheduledActionType.DEPOSIT_AUTO_REFUND.value: self.auto_refund_deposit,
            ScheduledActionType.REFUND_CONFLICTED_PAYMENT.value: self.refund_conflicted_payment,
        }
        handler = handlers.get(action.action)
        if handler is None:
            raise ValueError(f"Unknown scheduled action: {action.action}")
        payment_id = action.payment_id or (action.payload or {}).get("payment_id")
        if not payment_id:
            raise ValueError(f"Scheduled action {action.id} has no payment id")
        result = handler(payment_id)
        self.logger.info(f"Ran {action.action} for payment {payment_id}: {result.model_dump()}")
        return result.model_dump()

    # ------------------------------------------------------------------ #
    # Auto-charge
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("run_auto_charge")
    def run_auto_charge(self, payment_id: str) -> AutoChargeResult:
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            return AutoChargeResult(charged=False, reason="payment_not_found")
        if payment.status != PaymentStatus.METHOD_SAVED.value:
            return AutoChargeResult(charged=False, reason="payment_not_method_saved")
        if payment.capture_status == CaptureStatus.PENDING_CAPTURE.value:
            return AutoChargeResult(charged=False, reason="already_authorized")
        due_at = payment.payment_due_at or payment.created_at
        if self.now() < as_utc(due_at):
            return AutoChargeResult(charged=False, reason="payment_due_not_reached")

        key = f"auto-charge-{payment.id}-{to_epoch_ms(due_at)}"
        if not payment.stripe_customer_id or not payment.stripe_payment_method_id:
            self.logger.warning(f"Payment {payment.id} reached its due date without a saved card")
            self.transitions.mark_auto_charge_failed(
                payment.id, event_id=f"{key}-missing-method", missing_method=True
            )
            return AutoChargeResult(charged=False, reason="missing_payment_method")

        destination = self._destination_for(payment)
        try:
            intent = self.stripe_service.create_off_session_payment_intent(
                payment, idempotency_key=key, destination_account_id=destination
            )
        except PaymentProcessorException as exc:
            if exc.transient:
                raise
            transition = self.transitions.mark_auto_charge_failed(payment.id, event_id=key)
            return AutoChargeResult(charged=False, reason="charge_failed", transition=transition)

        if not intent.is_authorized_or_paid:
            transition = self.transitions.mark_auto_charge_failed(payment.id, event_id=key)
            return AutoChargeResult(
                charged=False,
                reason=f"payment_intent_{intent.status}",
                payment_intent_id=intent.id,
                transition=transition,
            )

        transition = self.transitions.mark_paid_by_payment_id(
            payment.id,
            event_id=key,
            payment_intent_id=intent.id,
            charge_id=intent.latest_charge,
        )
        return AutoChargeResult(
            charged=True, payment_intent_id=intent.id, transition=transition
        )

    @staticmethod
    def _destination_for(payment: Payment) -> Optional[str]:
        if not payment.is_manual_capture or payment.host is None:
            return None
        return payment.host.stripe_connect_account_id

    # ------------------------------------------------------------------ #
    # Capture at release (manual capture)
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("capture_payment")
    def capture_payment(self, payment_id: str) -> CaptureResult:
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            return CaptureResult(captured=False, reason="payment_not_found")
        if not payment.is_manual_capture:
            return CaptureResult(captured=False, reason="strategy_mismatch")
        if (
            payment.status == PaymentStatus.PAID.value
            and payment.capture_status == CaptureStatus.CAPTURED.value
        ):
            return CaptureResult(
                captured=True, reason="already_captured", capture_status=payment.capture_status
            )
        if payment.status == PaymentStatus.CANCELLED.value:
            return CaptureResult(captured=False, reason="cancelled")
        if payment.capture_status != CaptureStatus.PENDING_CAPTURE.value:
            return CaptureResult(
                captured=False, reason="not_authorized", capture_status=payment.capture_status
            )

        release_ms = to_epoch_ms(payment.release_at)
        if not payment.stripe_payment_intent_id:
            self.transitions.mark_capture_failed(
                payment.id, event_id=f"capture-missing-intent-{payment.id}", expired=False
            )
            return CaptureResult(
                captured=False,
                reason="missing_payment_intent",
                capture_status=CaptureStatus.CAPTURE_FAILED.value,
            )

        try:
            intent = self.stripe_service.capture_payment_intent(
                payment.stripe_payment_intent_id, idempotency_key=capture_key(payment)
            )
        except PaymentProcessorException as exc:
            if exc.transient:
                raise
            expired = "expired" in exc.message.lower()
            self.transitions.mark_capture_failed(
                payment.id, event_id=f"manual-capture-failed-{payment.id}-{release_ms}", expired=expired
            )
            status = CaptureStatus.EXPIRED if expired else CaptureStatus.CAPTURE_FAILED
            return CaptureResult(captured=False, reason=status.value, capture_status=status.value)

        self.transitions.mark_captured(
            payment.id,
            event_id=f"manual-capture-{payment.id}-{release_ms}",
            charge_id=intent.latest_charge,
        )
        return CaptureResult(captured=True, capture_status=CaptureStatus.CAPTURED.value)

    # ------------------------------------------------------------------ #
    # Trip completion
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("complete_booking_if_ended")
    def complete_booking_if_ended(self, booking_id: str) -> BookingCompletionResult:
        """
        Mark a confirmed or in-progress trip ``completed`` once its end has passed.

        Cancelled and unpaid bookings are left alone.
        """
        with self.transaction():
            booking = self.booking_repository.get_by_id(booking_id, for_update=True)
            if booking is None:
                return BookingCompletionResult(
                    booking_id=booking_id, completed=False, reason="not_found"
                )
            now = self.now()
            if now < as_utc(booking.end_date):
                return BookingCompletionResult(
                    booking_id=booking.id, completed=False, reason="trip_not_ended"
                )
            if booking.status == BookingStatus.COMPLETED.value:
                return BookingCompletionResult(
                    booking_id=booking.id, completed=True, reason="already_completed"
                )
            if not can_complete_booking(booking):
                return BookingCompletionResult(
                    booking_id=booking.id, completed=False, reason="not_completable"
                )
            booking.status = BookingStatus.COMPLETED.value
            booking.completed_at = booking.completed_at or now
        self.logger.info(f"Booking {booking.id} completed")
        return BookingCompletionResult(booking_id=booking.id, completed=True, reason="completed")

    # ------------------------------------------------------------------ #
    # Payout release (platform transfer fallback)
    # ------------------------------------------------------------------ #

    def _open_payout_gate(self, payment_id: str) -> Optional[str]:
        """
        Check the payout gate and mark the payout eligible once it is open.

        Returns a blocking reason, or None when release may proceed.
        """
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            if payment is None:
                return "payment_not_found"
            if payment.status in PAYOUT_BLOCKING_STATUSES:
                payment.payout_status = PayoutStatus.BLOCKED.value
                payment.updated_at = self.now()
                return "blocked_by_payment_status"
            if payment.status != PaymentStatus.PAID.value:
                return "payment_not_paid"
            now = self.now()
            if now < as_utc(payment.release_at):
                return "release_time_not_reached"

            strategy = payment.payment_strategy or PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
            if (
                strategy == PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
                and payment.payout_status != PayoutStatus.TRANSFERRED.value
            ):
                payment.payout_status = PayoutStatus.ELIGIBLE.value
                payment.updated_at = now
            return None

    def _set_payout_status(
        self, payment_id: str, status: PayoutStatus, *, transfer_id: Optional[str] = None
    ) -> None:
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            if payment is None:
                return
            payment.payout_status = status.value
            if transfer_id:
                payment.stripe_transfer_id = transfer_id
            payment.updated_at = self.now()

    @BaseService.measure_operation("release_host_payout")
    def release_host_payout(self, payment_id: str) -> PayoutReleaseResult:
        """
        Transfer the host's share after the trip ends.

        A missing Connect account is an ``error``; payouts switched off on the
        host's account are ``blocked`` until the host fixes it. A failed
        transfer is ``error`` and stays retryable.
        """
        blocked_reason = self._open_payout_gate(payment_id)
        if blocked_reason is not None:
            return PayoutReleaseResult(released=False, reason=blocked_reason)

        payment = self.payment_repository.get_by_id(payment_id)
        # Release time is the trip end, so the trip is over whatever the payout does
        self.complete_booking_if_ended(payment.booking_id)
        if payment.payout_status == PayoutStatus.TRANSFERRED.value:
            return PayoutReleaseResult(released=True, transfer_id=payment.stripe_transfer_id)
        strategy = payment.payment_strategy or PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
        if strategy != PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value:
            return PayoutReleaseResult(released=True, reason="not_transfer_strategy")

        host = payment.host
        if host is None or not host.stripe_connect_account_id:
            self._set_payout_status(payment.id, PayoutStatus.ERROR)
            return PayoutReleaseResult(released=False, reason="missing_host_connect_account")
        if not host.stripe_payouts_enabled:
            self._set_payout_status(payment.id, PayoutStatus.BLOCKED)
            return PayoutReleaseResult(released=False, reason="host_payouts_disabled")

        try:
            transfer_id = self.stripe_service.create_transfer(
                amount=quantize_amount(payment.host_amount),
                currency=payment.currency,
                destination=host.stripe_connect_account_id,
                metadata={"paymentId": str(payment.id), "bookingId": str(payment.booking_id)},
                idempotency_key=release_key(payment),
            )
        except PaymentProcessorException as exc:
            self._set_payout_status(payment.id, PayoutStatus.ERROR)
            if exc.transient:
                raise
            return PayoutReleaseResult(released=False, reason="transfer_failed")

        self._set_payout_status(payment.id, PayoutStatus.TRANSFERRED, transfer_id=transfer_id)
        self.logger.info(f"Released payout for payment {payment.id} as transfer {transfer_id}")
        return PayoutReleaseResult(released=True, transfer_id=transfer_id)

    # ------------------------------------------------------------------ #
    # Deposit auto-refund
    # ------------------------------------------------------------------ #

    def _set_deposit_status(
        self,
        payment_id: str,
        status: DepositStatus,
        *,
        refund_amount: Optional[Any] = None,
    ) -> None:
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id)
            if payment is None:
                return
            payment.deposit_status = status.value
            if refund_amount is not None:
                payment.deposit_refund_amount = refund_amount
            payment.updated_at = self.now()

    @BaseService.measure_operation("auto_refund_deposit")
    def auto_refund_deposit(self, payment_id: str) -> DepositRefundResult:
        """
        Refund the held deposit once the claim window closes with no case.

        An open case hands the deposit to the dispute workflow instead.
        """
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            return DepositRefundResult(refunded=False, reason="payment_not_found")
        if to_cents(payment.deposit_amount) <= 0:
            return DepositRefundResult(refunded=False, reason="no_deposit")
        if payment.deposit_status != DepositStatus.HELD.value:
            return DepositRefundResult(refunded=False, reason="deposit_not_held")
        if self.now() < as_utc(claim_window_end(payment)):
            return DepositRefundResult(refunded=False, reason="claim_window_not_reached")

        if self.deposit_case_repository.list_active_for_payment(payment.id):
            self._set_deposit_status(payment.id, DepositStatus.CASE_SUBMITTED)
            return DepositRefundResult(refunded=False, reason="case_exists")
        if not payment.stripe_charge_id and not payment.stripe_payment_intent_id:
            self._set_deposit_status(payment.id, DepositStatus.CASE_SUBMITTED)
            return DepositRefundResult(refunded=False, reason="missing_stripe_charge_reference")

        deposit = quantize_amount(payment.deposit_amount)
        charge_id = payment.stripe_charge_id
        intent_id = None if charge_id else payment.stripe_payment_intent_id
        key = deposit_refund_key(payment)
        self._set_deposit_status(payment.id, DepositStatus.REFUND_PENDING)

        try:
            refund_id = self.stripe_service.create_refund(
                amount=deposit,
                idempotency_key=key,
                charge_id=charge_id,
                payment_intent_id=intent_id,
                metadata={"paymentId": str(payment_id), "refundKind": "deposit_auto_refund"},
            )
        except PaymentProcessorException as exc:
            if exc.transient:
                self._set_deposit_status(payment_id, DepositStatus.HELD)
                raise
            self.logger.error(f"Deposit refund failed for payment {payment_id}: {exc.message}")
            self._set_deposit_status(payment_id, DepositStatus.CASE_SUBMITTED)
            return DepositRefundResult(refunded=False, reason=exc.message)

        self._set_deposit_status(payment_id, DepositStatus.REFUNDED, refund_amount=deposit)
        self.logger.info(f"Refunded deposit {deposit} for payment {payment_id} (refund {refund_id})")
        return DepositRefundResult(refunded=True, refund_id=refund_id)

    # ------------------------------------------------------------------ #
    # Conflicted activation refund
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("refund_conflicted_payment")
    def refund_conflicted_payment(self, payment_id: str) -> ConflictRefundResult:
        """
        Return money collected for a booking that lost its dates.

        An uncaptured manual-capture hold is released; captured funds are
        refunded in full.
        """
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            return ConflictRefundResult(refunded=False, reason="payment_not_found")
        if payment.status != PaymentStatus.CANCELLED.value:
            return ConflictRefundResult(refunded=False, reason="payment_not_cancelled")
        if not payment.stripe_charge_id and not payment.stripe_payment_intent_id:
            return ConflictRefundResult(refunded=False, reason="missing_stripe_charge_reference")

        key = f"conflict-refund-{payment.id}"
        try:
            if payment.is_manual_capture and payment.stripe_payment_intent_id:
                intent = self.stripe_service.cancel_payment_intent(
                    payment.stripe_payment_intent_id, idempotency_key=key
                )
                self.logger.info(f"Released authorization {intent.id} for payment {payment.id}")
                return ConflictRefundResult(refunded=True, reason="authorization_released")

            refund_id = self.stripe_service.create_refund(
                amount=quantize_amount(payment.total_amount),
                idempotency_key=key,
                charge_id=payment.stripe_charge_id,
                payment_intent_id=None if payment.stripe_charge_id else payment.stripe_payment_intent_id,
                metadata={"paymentId": str(payment.id), "refundKind": "booking_conflict"},
            )
        except PaymentProcessorException as exc:
            if exc.transient:
                raise
            self.logger.error(f"Conflict refund failed for payment {payment.id}: {exc.message}")
            return ConflictRefundResult(refunded=False, reason=exc.message)

        self.logger.info(f"Refunded conflicted payment {payment.id} (refund {refund_id})")
        return ConflictRefundResult(refunded=True, refund_id=refund_id)
