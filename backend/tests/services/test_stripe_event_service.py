"""Tests for webhook event dispatch and the webhook ledger."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from carshare.core.exceptions import PaymentProcessorException
from carshare.models.booking import BookingStatus
from carshare.models.host import Host
from carshare.models.payment import DepositStatus, PaymentStatus, PayoutStatus
from carshare.models.webhook_event import WebhookEvent
from carshare.services.stripe_event_service import StripeEventService
from tests.factories import (
    completed_payment_session,
    completed_setup_session,
    make_booking_with_payment,
    make_host,
    stripe_event,
)


@pytest.fixture
def events(db, clock, stripe_gateway) -> StripeEventService:
    return StripeEventService(db, now=clock, stripe_service=stripe_gateway)


def _ledger(db, event_id: str) -> WebhookEvent:
    return db.query(WebhookEvent).filter_by(event_id=event_id).one()


class TestHandleEvent:
    def test_processed_event_is_recorded(self, db, clock, car, renter, events) -> None:
        _, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() + timedelta(days=1),
            booking_status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.CHECKOUT_CREATED.value,
            payout_status=PayoutStatus.BLOCKED.value,
            stripe_checkout_session_id="cs_evt",
        )
        response = events.handle_event(
            stripe_event(
                "checkout.session.completed",
                completed_payment_session("cs_evt", "pi_evt"),
                event_id="evt_paid",
            )
        )

        assert response.status == "processed"
        assert response.result["payment_id"] == payment.id
        assert payment.status == PaymentStatus.PAID.value
        # A delivered event keeps its own id as the idempotency marker
        assert payment.last_processed_event_id == "evt_paid"
        row = _ledger(db, "evt_paid")
        assert row.status == "processed"
        assert row.related_payment_id == payment.id
        assert row.processed_at == clock()

    def test_redelivery_is_duplicate(self, events, db) -> None:
        event = stripe_event("invoice.created", {"id": "in_1"}, event_id="evt_dup")
        assert events.handle_event(event).status == "ignored"
        assert events.handle_event(event).status == "duplicate"
        assert db.query(WebhookEvent).count() == 1

    def test_unknown_type_is_ignored(self, db, events) -> None:
        response = events.handle_event(stripe_event("customer.created", {"id": "cus_1"}))
        assert response.status == "ignored"
        assert _ledger(db, response.event_id).status == "ignored"

    def test_disabled_connect_payouts_acknowledge_without_effect(
        self, db, events, use_settings
    ) -> None:
        use_settings(enable_connect_payouts=False)
        response = events.handle_event(
            stripe_event("checkout.session.completed", completed_setup_session("cs_x"))
        )
        assert response.status == "ignored"
        assert response.message == "Connect payouts disabled."
        assert db.query(WebhookEvent).count() == 0

    def test_handler_failure_marks_ledger_and_reraises(self, db, events) -> None:
        event = stripe_event(
            "payment_intent.payment_failed", {"id": "pi_boom", "status": "requires_payment_method"},
            event_id="evt_boom",
        )
        with patch.object(
            events.transitions, "mark_payment_failed", side_effect=RuntimeError("db went away")
        ):
            with pytest.raises(RuntimeError):
                events.handle_event(event)

        row = _ledger(db, "evt_boom")
        assert row.status == "failed"
        assert row.processing_error == "db went away"

        # Redelivery is processed again, not treated as a duplicate
        assert events.handle_event(event).status == "processed"
        assert row.status == "processed"


class TestEventHandlers:
    def test_setup_session_uses_fetched_card(self, db, clock, car, renter, events, stripe_gateway) -> None:
        booking, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() + timedelta(days=7),
            booking_status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.METHOD_COLLECTION_PENDING.value,
            stripe_checkout_session_id="cs_setup",
        )
        events.handle_event(
            stripe_event("checkout.session.completed", completed_setup_session("cs_setup", "seti_9"))
        )
        stripe_gateway.fetch_setup_intent_payment_method.assert_called_once_with("seti_9")
        assert payment.status == PaymentStatus.METHOD_SAVED.value
        assert payment.stripe_setup_intent_id == "seti_9"
        assert booking.status == BookingStatus.PAYMENT_PENDING.value

    def test_full_refund_reverses_transfer(self, db, clock, car, renter, events, stripe_gateway) -> None:
        _, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=6),
            payout_status=PayoutStatus.TRANSFERRED.value,
            stripe_transfer_id="tr_77",
        )
        response = events.handle_event(
            stripe_event(
                "charge.refunded",
                {
                    "id": payment.stripe_charge_id,
                    "payment_intent": payment.stripe_payment_intent_id,
                    "amount": 53000,
                    "amount_captured": 53000,
                    "amount_refunded": 53000,
                },
            )
        )

        assert response.result["reversal_id"] == "trr_test"
        kwargs = stripe_gateway.create_transfer_reversal.call_args.kwargs
        assert kwargs["idempotency_key"] == f"reversal-{payment.id}-tr_77"
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.payout_status == PayoutStatus.REVERSED.value

    def test_failed_reversal_does_not_fail_event(self, db, clock, car, renter, events, stripe_gateway) -> None:
        stripe_gateway.create_transfer_reversal.side_effect = PaymentProcessorException(
            "PROCESSOR_ERROR: Failed to reverse transfer: already reversed"
        )
        _, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=6),
            payout_status=PayoutStatus.TRANSFERRED.value,
            stripe_transfer_id="tr_78",
        )
        response = events.handle_event(
            stripe_event(
                "charge.dispute.created",
                {"id": "dp_1", "charge": payment.stripe_charge_id, "reason": "fraudulent"},
            )
        )
        assert response.status == "processed"
        assert response.result["reversal_id"] is None
        assert payment.status == PaymentStatus.DISPUTED.value
        assert payment.payout_status == PayoutStatus.TRANSFERRED.value

    def test_deposit_refund_event(self, db, clock, car, renter, events) -> None:
        _, payment = make_booking_with_payment(db, car, renter, start=clock() - timedelta(days=10))
        events.handle_event(
            stripe_event(
                "charge.refunded",
                {"id": payment.stripe_charge_id, "amount": 53000, "amount_refunded": 20000},
            )
        )
        assert payment.status == PaymentStatus.PAID.value
        assert payment.deposit_status == DepositStatus.REFUNDED.value

    def test_charge_without_intent_is_not_applicable(self, events) -> None:
        response = events.handle_event(stripe_event("charge.succeeded", {"id": "ch_lonely"}))
        assert response.result["reason"] == "not_applicable"

    def test_account_updated_syncs_host_flags(self, db, events) -> None:
        host = make_host(db, payouts_ready=False, connect_account_id="acct_sync")
        events.handle_event(
            stripe_event(
                "account.updated",
                {
                    "id": "acct_sync",
                    "details_submitted": True,
                    "charges_enabled": True,
                    "payouts_enabled": True,
                },
            )
        )
        refreshed = db.get(Host, host.id)
        assert refreshed.stripe_payouts_enabled is True
        assert refreshed.stripe_onboarding_complete is True
        assert refreshed.is_verified is True

    def test_unknown_connect_account(self, events) -> None:
        response = events.handle_event(stripe_event("account.updated", {"id": "acct_nobody"}))
        assert response.result == {"ok": False, "reason": "not_applicable"}
