"""Tests for webhook endpoint setup and the lifecycle field backfill."""

from datetime import timedelta
from decimal import Decimal

import pytest

from carshare.core.exceptions import ServiceException
from carshare.models.booking import BookingStatus
from carshare.models.payment import CaptureStatus, DepositStatus, PaymentStatus, PaymentStrategy
from carshare.services.payment_admin_service import PaymentAdminService, diff_events
from carshare.services.stripe_event_service import STRIPE_WEBHOOK_EVENTS
from tests.factories import make_booking_with_payment, make_user

WEBHOOK_URL = "https://api.example.com/api/v1/payments/webhook"


@pytest.fixture
def admin(db, clock, stripe_gateway) -> PaymentAdminService:
    return PaymentAdminService(db, now=clock, stripe_service=stripe_gateway)


@pytest.mark.unit
def test_diff_events() -> None:
    diff = diff_events(["a", "b", "c"], ["b", "c", "d"])
    assert diff.added == ["d"]
    assert diff.removed == ["a"]
    assert diff.unchanged == ["b", "c"]


class TestSetupWebhookEndpoint:
    def test_creates_missing_endpoint(self, admin, stripe_gateway, use_settings) -> None:
        use_settings(stripe_webhook_url=WEBHOOK_URL)
        stripe_gateway.list_webhook_endpoints.return_value = [
            {"id": "we_other", "url": "https://elsewhere.example.com/hook", "enabled_events": []}
        ]
        stripe_gateway.create_webhook_endpoint.return_value = {"id": "we_new"}

        result = admin.setup_webhook_endpoint()

        assert result.mode == "created"
        assert result.endpoint_id == "we_new"
        assert result.event_diff.added == sorted(STRIPE_WEBHOOK_EVENTS)
        stripe_gateway.create_webhook_endpoint.assert_called_once_with(
            url=WEBHOOK_URL, enabled_events=list(STRIPE_WEBHOOK_EVENTS)
        )
        stripe_gateway.update_webhook_endpoint.assert_not_called()

    def test_updates_existing_endpoint(self, admin, stripe_gateway, use_settings) -> None:
        use_settings(stripe_webhook_url=WEBHOOK_URL)
        stripe_gateway.list_webhook_endpoints.return_value = [
            {"id": "we_1", "url": WEBHOOK_URL, "enabled_events": ["charge.refunded", "invoice.paid"]}
        ]
        stripe_gateway.update_webhook_endpoint.return_value = {"id": "we_1"}

        result = admin.setup_webhook_endpoint()

        assert result.mode == "updated"
        assert result.endpoint_id == "we_1"
        assert result.event_diff.removed == ["invoice.paid"]
        assert result.event_diff.unchanged == ["charge.refunded"]
        assert "charge.refunded" not in result.event_diff.added
        stripe_gateway.create_webhook_endpoint.assert_not_called()

    def test_requires_configured_url(self, admin, use_settings) -> None:
        use_settings(stripe_webhook_url="  ")
        with pytest.raises(ServiceException, match="STRIPE_WEBHOOK_URL"):
            admin.setup_webhook_endpoint()


class TestBackfillPaymentStrategy:
    def test_fills_missing_fields(self, db, clock, car, admin) -> None:
        renter = make_user(db, stripe_customer_id="cus_legacy")
        booking, payment = make_booking_with_payment(
            db, car, renter, start=clock() + timedelta(days=4)
        )
        for field in (
            "payment_strategy",
            "capture_status",
            "payment_due_at",
            "deposit_status",
            "deposit_claim_window_ends_at",
            "paid_at",
        ):
            setattr(payment, field, None)
        db.commit()

        result = admin.backfill_payment_strategy()

        assert result.scanned == 1
        assert result.updated == 1
        assert payment.payment_strategy == PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
        assert payment.capture_status == CaptureStatus.NOT_REQUIRED.value
        assert payment.payment_due_at == booking.start_date - timedelta(hours=24)
        assert payment.deposit_claim_window_ends_at == booking.end_date + timedelta(hours=72)
        assert payment.deposit_status == DepositStatus.HELD.value
        assert payment.paid_at is not None
        assert payment.stripe_customer_id == "cus_legacy"
        assert payment.updated_at == clock()

    def test_unpaid_legacy_payment_has_no_held_deposit(self, db, clock, car, renter, admin) -> None:
        _, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() + timedelta(days=4),
            booking_status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.CHECKOUT_CREATED.value,
        )
        payment.deposit_status = None
        db.commit()

        admin.backfill_payment_strategy()

        assert payment.deposit_status == DepositStatus.NOT_APPLICABLE.value
        assert payment.paid_at is None
        assert payment.deposit_amount == Decimal("200.00")

    def test_complete_payments_are_untouched(self, db, clock, car, renter, admin) -> None:
        make_booking_with_payment(db, car, renter, start=clock() + timedelta(days=4))
        result = admin.backfill_payment_strategy(limit=10)
        assert result.scanned == 0
        assert result.updated == 0
