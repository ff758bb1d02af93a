# backend/carshare/services/stripe_event_service.py
"""
Stripe Event Service

Single dispatcher for verified Stripe webhook events. Each delivery is
written to the webhook ledger first; a redelivery of an event that was
already handled short-circuits before any handler runs. Handlers delegate
to ``PaymentTransitionService`` and report a structured outcome.

Transfer reversals run after the refund or dispute transition has
committed, using the payout state from before the event.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import PaymentProcessorException
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..schemas.payment_schemas import TransitionReason, TransitionResult, WebhookResponse
from ..schemas.stripe_payloads import (
    AccountSnapshot,
    ChargeSnapshot,
    CheckoutSessionSnapshot,
    DisputeSnapshot,
    PaymentIntentSnapshot,
    StripeEventEnvelope,
)
from ..utils.time_utils import Clock
from .base import BaseService
from .payment_transition_service import ChargeAdjustment, PaymentTransitionService, ReversalPlan
from .reconciliation_service import ReconciliationService
from .stripe_service import StripeService
from .webhook_ledger_service import WebhookLedgerService

WEBHOOK_SOURCE = "stripe"

STRIPE_WEBHOOK_EVENTS = [
    "checkout.session.completed",
    "checkout.session.expired",
    "payment_intent.payment_failed",
    "payment_intent.succeeded",
    "payment_intent.amount_capturable_updated",
    "payment_intent.canceled",
    "charge.succeeded",
    "charge.refunded",
    "charge.refund.updated",
    "charge.dispute.created",
    "account.updated",
]

EventHandler = Callable[[StripeEventEnvelope], Dict[str, Any]]


class StripeEventService(BaseService):
    def __init__(
        self,
        db: Session,
        now: Optional[Clock] = None,
        stripe_service: Optional[StripeService] = None,
        transitions: Optional[PaymentTransitionService] = None,
    ):
        super().__init__(db, now)
        self.stripe_service = stripe_service or StripeService(db, now=now)
        self.transitions = transitions or PaymentTransitionService(db, now=now)
        self.reconciliation = ReconciliationService(
            db, now=now, stripe_service=self.stripe_service, transitions=self.transitions
        )
        self.ledger = WebhookLedgerService(db, now=now)
        self.host_repository = RepositoryFactory.create_host_repository(db)
        self._handlers: Dict[str, EventHandler] = {
            "checkout.session.completed": self._on_checkout_completed,
            "checkout.session.expired": self._on_checkout_expired,
            "payment_intent.payment_failed": self._on_payment_failed,
            "payment_intent.succeeded": self._on_payment_succeeded,
            "payment_intent.amount_capturable_updated": self._on_amount_capturable_updated,
            "payment_intent.canceled": self._on_payment_canceled,
            "charge.succeeded": self._on_charge_succeeded,
            "charge.refunded": self._on_charge_refunded,
            "charge.refund.updated": self._on_charge_refunded,
            "charge.dispute.created": self._on_dispute_created,
            "account.updated": self._on_account_updated,
        }

    @BaseService.measure_operation("handle_stripe_event")
    def handle_event(
        self, event: StripeEventEnvelope, *, headers: Optional[Dict[str, Any]] = None
    ) -> WebhookResponse:
        """
        Apply one verified event.

        ``headers`` are the delivery's HTTP headers, stored on the ledger row
        with credentials redacted.

        Handler exceptions mark the ledger row ``failed`` and propagate so
        Stripe redelivers the event.
        """
        if not settings.enable_connect_payouts:
            self.logger.info(f"Connect payouts disabled; acknowledging {event.type} without effect")
            prometheus_metrics.record_webhook_event(event.type, "ignored")
            return WebhookResponse(
                status="ignored",
                event_type=event.type,
                event_id=event.id,
                message="Connect payouts disabled.",
            )

        with self.transaction():
            ledger_event = self.ledger.log_received(
                source=WEBHOOK_SOURCE,
                event_type=event.type,
                event_id=event.id,
                payload=event.model_dump(mode="json"),
                headers=headers,
            )
        if self.ledger.is_already_handled(ledger_event):
            self.logger.info(f"Stripe event {event.id} already handled; skipping")
            prometheus_metrics.record_webhook_event(event.type, "duplicate")
            return WebhookResponse(status="duplicate", event_type=event.type, event_id=event.id)

        handler = self._handlers.get(event.type)
        if handler is None:
            self.logger.info(f"Unhandled Stripe event type: {event.type}")
            with self.transaction():
                self.ledger.mark_processed(ledger_event, status="ignored")
            prometheus_metrics.record_webhook_event(event.type, "ignored")
            return WebhookResponse(status="ignored", event_type=event.type, event_id=event.id)

        try:
            outcome = handler(event)
        except Exception as exc:
            self.db.rollback()
            self.logger.error(f"Error processing Stripe event {event.id} ({event.type}): {exc}")
            with self.transaction():
                self.ledger.mark_failed(ledger_event, error=str(exc))
            prometheus_metrics.record_webhook_event(event.type, "failed")
            raise

        with self.transaction():
            self.ledger.mark_processed(ledger_event, related_payment_id=outcome.get("payment_id"))
        prometheus_metrics.record_webhook_event(event.type, "processed")
        self.logger.info(
            f"Processed Stripe event {event.id} ({event.type}): reason={outcome.get('reason')}"
        )
        return WebhookResponse(
            status="processed", event_type=event.type, event_id=event.id, result=outcome
        )

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _outcome(result: TransitionResult) -> Dict[str, Any]:
        return result.model_dump()

    def _on_checkout_completed(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        session = event.object_as(CheckoutSessionSnapshot)
        applied = self.reconciliation.apply_checkout_session(
            session, event_id_base=event.id, delivered_event=True
        )
        outcome = applied.model_dump()
        final = applied.final
        outcome["payment_id"] = final.payment_id if final is not None else None
        return outcome

    def _on_checkout_expired(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        session = event.object_as(CheckoutSessionSnapshot)
        return self._outcome(
            self.transitions.mark_checkout_session_expired(
                session_id=session.id, mode=session.mode, event_id=event.id
            )
        )

    def _on_payment_failed(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        intent = event.object_as(PaymentIntentSnapshot)
        return self._outcome(self.transitions.mark_payment_failed(intent, event_id=event.id))

    def _on_payment_succeeded(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        intent = event.object_as(PaymentIntentSnapshot)
        return self._outcome(
            self.transitions.mark_payment_intent_succeeded(intent, event_id=event.id)
        )

    def _on_amount_capturable_updated(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        intent = event.object_as(PaymentIntentSnapshot)
        return self._outcome(
            self.transitions.mark_authorization_capturable(intent, event_id=event.id)
        )

    def _on_payment_canceled(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        intent = event.object_as(PaymentIntentSnapshot)
        return self._outcome(
            self.transitions.mark_authorization_cancelled(intent, event_id=event.id)
        )

    def _on_charge_succeeded(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        charge = event.object_as(ChargeSnapshot)
        if not charge.payment_intent:
            return self._outcome(TransitionResult.success(TransitionReason.NOT_APPLICABLE))
        return self._outcome(self.transitions.attach_charge(charge, event_id=event.id))

    def _on_charge_refunded(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        charge = event.object_as(ChargeSnapshot)
        adjustment = self.transitions.apply_charge_refund(charge, event_id=event.id)
        return self._finish_adjustment(adjustment)

    def _on_dispute_created(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        dispute = event.object_as(DisputeSnapshot)
        if not dispute.charge and not dispute.payment_intent:
            return self._outcome(TransitionResult.failure(TransitionReason.PAYMENT_NOT_FOUND))
        adjustment = self.transitions.mark_disputed(
            charge_id=dispute.charge,
            payment_intent_id=dispute.payment_intent,
            event_id=event.id,
        )
        return self._finish_adjustment(adjustment)

    def _on_account_updated(self, event: StripeEventEnvelope) -> Dict[str, Any]:
        account = event.object_as(AccountSnapshot)
        with self.transaction():
            host = self.host_repository.get_by_connect_account_id(account.id)
            if host is None:
                self.logger.info(f"account.updated for unknown Connect account {account.id}")
                return {"ok": False, "reason": TransitionReason.NOT_APPLICABLE.value}
            host.stripe_onboarding_complete = account.details_submitted
            host.stripe_charges_enabled = account.charges_enabled
            host.stripe_payouts_enabled = account.payouts_enabled
            host.is_verified = account.details_submitted and account.payouts_enabled
            self.logger.info(
                f"Synced host {host.id}: charges={account.charges_enabled} "
                f"payouts={account.payouts_enabled}"
            )
            return {"ok": True, "reason": None, "host_id": host.id}

    # ------------------------------------------------------------------ #
    # Transfer reversal
    # ------------------------------------------------------------------ #

    def _finish_adjustment(self, adjustment: ChargeAdjustment) -> Dict[str, Any]:
        outcome = self._outcome(adjustment.result)
        if adjustment.reversal is not None:
            outcome["reversal_id"] = self._reverse_transfer(adjustment.reversal)
        return outcome

    def _reverse_transfer(self, plan: ReversalPlan) -> Optional[str]:
        """
        Pull the host's share back after a full refund or a dispute.

        A failed reversal leaves ``payout_status=transferred`` for support
        to follow up and does not fail the event.
        """
        try:
            reversal_id = self.stripe_service.create_transfer_reversal(
                plan.transfer_id,
                amount=plan.amount,
                idempotency_key=f"reversal-{plan.payment_id}-{plan.transfer_id}",
                metadata={"paymentId": plan.payment_id},
            )
        except PaymentProcessorException as exc:
            self.logger.error(
                f"Transfer reversal failed for payment {plan.payment_id} "
                f"(transfer {plan.transfer_id}): {exc.message}"
            )
            return None
        self.transitions.record_transfer_reversal(plan.payment_id, reversal_id)
        self.logger.info(f"Reversed transfer {plan.transfer_id} for payment {plan.payment_id}")
        return reversal_id
