# backend/carshare/services/reconciliation_service.py
"""
Reconciliation Service

Re-derives payment state from Stripe when a webhook may have been lost or
the renter's redirect raced it:

- redirect-confirm: the client returns from Checkout and asks us to check
- stale sweep: a periodic scan of checkouts that stayed pending too long

Both apply the same transitions as the webhook, under deterministic
synthetic event ids, so whichever path lands second is a no-op.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ForbiddenException,
    NotFoundException,
    PaymentProcessorException,
    ServiceException,
)
from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..repositories.payment_repository import STALE_CANDIDATE_STATUSES
from ..schemas.payment_schemas import (
    CheckoutReconcileResult,
    StaleSweepItem,
    StaleSweepResult,
    TransitionReason,
    should_fallback,
)
from ..schemas.stripe_payloads import CheckoutSessionSnapshot
from ..utils.time_utils import Clock
from .base import BaseService
from .payment_transition_service import PaymentTransitionService
from .stripe_service import StripeService


class ReconciliationService(BaseService):
    def __init__(
        self,
        db: Session,
        now: Optional[Clock] = None,
        stripe_service: Optional[StripeService] = None,
        transitions: Optional[PaymentTransitionService] = None,
    ):
        super().__init__(db, now)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.stripe_service = stripe_service or StripeService(db, now=now)
        self.transitions = transitions or PaymentTransitionService(db, now=now)

    def apply_checkout_session(
        self,
        session: CheckoutSessionSnapshot,
        *,
        event_id_base: str,
        delivered_event: bool = False,
    ) -> CheckoutReconcileResult:
        """
        Apply a completed checkout session through the fallback chain.

        Payment-mode sessions are matched by session id, then by the
        ``paymentId`` in the session metadata, then by payment intent id.
        A later lookup runs only when the previous one found nothing to pay.

        ``delivered_event`` marks a real webhook: its id is used as-is for
        the first attempt instead of a ``-setup``/``-primary`` suffix.
        """
        result = CheckoutReconcileResult(ok=False, session_id=session.id, mode=session.mode)

        if session.status == "expired":
            # Expired sessions never complete; release the dates instead of re-polling them
            expired = self.transitions.mark_checkout_session_expired(
                session_id=session.id, mode=session.mode, event_id=f"{event_id_base}-expired"
            )
            result.ok = expired.ok
            result.reason = expired.reason
            result.primary = expired
            return result

        if session.mode == "setup":
            if not session.is_complete or not session.setup_intent:
                result.reason = TransitionReason.SETUP_SESSION_NOT_COMPLETE.value
                return result
            details = self.stripe_service.fetch_setup_intent_payment_method(session.setup_intent)
            setup_result = self.transitions.mark_payment_method_collected(
                session_id=session.id,
                event_id=event_id_base if delivered_event else f"{event_id_base}-setup",
                setup_intent_id=details.setup_intent_id,
                payment_method_id=details.payment_method_id,
                customer_id=details.customer_id or session.customer,
            )
            result.setup_result = setup_result
            result.ok = setup_result.ok
            result.reason = setup_result.reason
            return result

        if session.mode != "payment":
            result.reason = TransitionReason.UNSUPPORTED_CHECKOUT_MODE.value
            return result
        # The completed event itself is the paid fact; fetched sessions must show it
        collected = session.is_complete if delivered_event else session.is_collected
        if not collected:
            result.reason = TransitionReason.CHECKOUT_NOT_PAID.value
            return result

        payment_intent_id = session.payment_intent_id
        charge_id = session.charge_id

        result.primary = self.transitions.mark_paid_by_session(
            session.id,
            event_id=event_id_base if delivered_event else f"{event_id_base}-primary",
            payment_intent_id=payment_intent_id,
            charge_id=charge_id,
        )

        metadata_payment_id = session.metadata_payment_id
        if should_fallback(result.primary) and metadata_payment_id:
            result.fallback_by_payment_id = self.transitions.mark_paid_by_payment_id(
                metadata_payment_id,
                event_id=f"{event_id_base}-payment-id",
                payment_intent_id=payment_intent_id,
                charge_id=charge_id,
            )

        last = result.fallback_by_payment_id or result.primary
        if should_fallback(last) and payment_intent_id:
            result.fallback_by_payment_intent = self.transitions.mark_paid_by_payment_intent(
                payment_intent_id,
                event_id=f"{event_id_base}-payment-intent",
                charge_id=charge_id,
            )

        final = result.final
        result.ok = final.ok if final is not None else False
        result.reason = final.reason if final is not None else None
        return result

    @BaseService.measure_operation("reconcile_checkout_redirect")
    def reconcile_checkout_redirect(self, session_id: str, user: User) -> CheckoutReconcileResult:
        """
        Confirm a checkout the renter just returned from.

        Raises:
            NotFoundException: no payment references the session
            ForbiddenException: the payment belongs to another renter
        """
        payment = self.payment_repository.get_by_checkout_session_id(session_id)
        if payment is None:
            raise NotFoundException("NOT_FOUND: Payment not found for checkout session.")
        if payment.renter_id != user.id:
            raise ForbiddenException("FORBIDDEN: This checkout belongs to another renter.")

        try:
            session = self.stripe_service.retrieve_checkout_session(session_id)
        except (PaymentProcessorException, ServiceException) as exc:
            self.logger.warning(f"Could not fetch checkout {session_id}: {exc.message}")
            prometheus_metrics.record_reconciliation("redirect", "errored")
            return CheckoutReconcileResult(
                ok=False,
                reason=TransitionReason.STRIPE_FETCH_FAILED.value,
                message=exc.message,
                session_id=session_id,
            )

        result = self.apply_checkout_session(
            session, event_id_base=f"redirect-reconcile-{session_id}"
        )
        prometheus_metrics.record_reconciliation(
            "redirect", "reconciled" if result.resolved else "skipped"
        )
        self.logger.info(
            f"Redirect reconcile for {session_id}: ok={result.ok} reason={result.reason}"
        )
        return result

    @BaseService.measure_operation("reconcile_stale_checkouts")
    def reconcile_stale_checkouts(
        self,
        *,
        limit: Optional[int] = None,
        older_than: Optional[timedelta] = None,
    ) -> StaleSweepResult:
        """
        Re-fetch checkouts that stayed pending past the staleness threshold.

        A failure on one payment is recorded and the sweep moves on.
        """
        batch = limit or settings.stale_checkout_batch_limit
        age = older_than if older_than is not None else timedelta(
            minutes=settings.stale_checkout_age_minutes
        )
        candidates = self.payment_repository.list_stale_checkouts(
            updated_before=self.now() - age, limit=batch
        )
        sweep = StaleSweepResult(
            scanned=len(candidates),
            limit=batch,
            older_than_ms=int(age.total_seconds() * 1000),
        )

        for payment in candidates:
            payment_id = payment.id
            session_id = payment.stripe_checkout_session_id
            try:
                session = self.stripe_service.retrieve_checkout_session(session_id)
                applied = self.apply_checkout_session(
                    session, event_id_base=f"stale-checkout-reconcile-{payment_id}"
                )
            except (PaymentProcessorException, ServiceException) as exc:
                self.db.rollback()
                self.logger.warning(f"Stale sweep failed for payment {payment_id}: {exc.message}")
                sweep.errored += 1
                sweep.results.append(
                    StaleSweepItem(
                        payment_id=payment_id,
                        session_id=session_id,
                        outcome="errored",
                        reasons=[exc.message],
                    )
                )
                prometheus_metrics.record_reconciliation("stale_sweep", "errored")
                self._mark_inspected(payment_id)
                continue

            reasons = [
                attempt.reason or "ok"
                for attempt in ([applied.setup_result] if applied.setup_result else applied.attempts())
            ] or [applied.reason or "skipped"]
            outcome = "reconciled" if applied.resolved else "skipped"
            if outcome == "reconciled":
                sweep.reconciled += 1
            else:
                sweep.skipped += 1
            sweep.results.append(
                StaleSweepItem(
                    payment_id=payment_id, session_id=session_id, outcome=outcome, reasons=reasons
                )
            )
            prometheus_metrics.record_reconciliation("stale_sweep", outcome)
            if outcome != "reconciled":
                self._mark_inspected(payment_id)

        self.logger.info(
            f"Stale sweep: scanned={sweep.scanned} reconciled={sweep.reconciled} "
            f"skipped={sweep.skipped} errored={sweep.errored}"
        )
        return sweep

    def _mark_inspected(self, payment_id: str) -> None:
        """Move a still-waiting checkout to the back of the stale queue."""
        with self.transaction():
            payment = self.payment_repository.get_by_id(payment_id, for_update=True)
            if payment is not None and payment.status in STALE_CANDIDATE_STATUSES:
                payment.updated_at = self.now()
