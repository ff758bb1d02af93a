"""Tests for redirect URL validation, settings coercion and Stripe payload parsing."""

import pytest

from carshare.core.config import DEFAULT_PAYMENT_CAPTURE_MAX_DAYS, Settings
from carshare.core.exceptions import ValidationException
from carshare.schemas.stripe_payloads import (
    ChargeSnapshot,
    CheckoutSessionSnapshot,
    PaymentIntentSnapshot,
    SetupIntentDetails,
    StripeEventEnvelope,
)
from carshare.services.payment_admin_service import diff_events
from carshare.utils.url_validation import assert_allowed_redirect_url


@pytest.mark.unit
class TestRedirectUrlValidation:
    def test_trims_and_accepts_any_http_host_without_allow_list(self) -> None:
        url = assert_allowed_redirect_url(
            "  https://shop.example.org/done  ", "success_url", allowed_hosts=[]
        )
        assert url == "https://shop.example.org/done"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_missing_url(self, raw) -> None:
        with pytest.raises(ValidationException) as exc_info:
            assert_allowed_redirect_url(raw, "success_url", allowed_hosts=[])
        assert exc_info.value.message == "INVALID_INPUT: success_url is required."

    @pytest.mark.parametrize("raw", ["javascript:alert(1)", "ftp://example.com/x", "/relative/path"])
    def test_non_http_schemes_are_rejected(self, raw: str) -> None:
        with pytest.raises(ValidationException) as exc_info:
            assert_allowed_redirect_url(raw, "cancel_url", allowed_hosts=[])
        assert "cancel_url protocol is not allowed" in exc_info.value.message

    def test_host_is_required(self) -> None:
        with pytest.raises(ValidationException):
            assert_allowed_redirect_url("https:///path", "success_url", allowed_hosts=[])

    def test_allow_list_is_enforced_case_insensitively(self) -> None:
        allowed = ["App.Example.com"]
        assert assert_allowed_redirect_url("https://APP.example.com/x", "success_url", allowed_hosts=allowed)
        with pytest.raises(ValidationException) as exc_info:
            assert_allowed_redirect_url("https://evil.example.net/x", "success_url", allowed_hosts=allowed)
        assert "origin is not allowed" in exc_info.value.message

    def test_defaults_to_configured_hosts(self, use_settings) -> None:
        use_settings(allowed_redirect_hosts="app.example.com, admin.example.com")
        with pytest.raises(ValidationException):
            assert_allowed_redirect_url("https://other.example.com", "success_url")


@pytest.mark.unit
class TestSettingsCoercion:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("4", 4),
            (" 9 ", 9),
            ("0", DEFAULT_PAYMENT_CAPTURE_MAX_DAYS),
            ("-2", DEFAULT_PAYMENT_CAPTURE_MAX_DAYS),
            ("abc", DEFAULT_PAYMENT_CAPTURE_MAX_DAYS),
        ],
    )
    def test_capture_max_days(self, raw: str, expected: int) -> None:
        assert Settings(payment_capture_max_days=raw).payment_capture_max_days == expected

    @pytest.mark.parametrize("raw", ["0", "false", "No", " off "])
    def test_explicit_off_values_disable_flags(self, raw: str) -> None:
        configured = Settings(enable_connect_payouts=raw, enable_destination_manual_capture=raw)
        assert configured.enable_connect_payouts is False
        assert configured.enable_destination_manual_capture is False

    @pytest.mark.parametrize("raw", ["1", "true", "yes", "maybe"])
    def test_other_values_keep_flags_on(self, raw: str) -> None:
        assert Settings(enable_connect_payouts=raw).enable_connect_payouts is True

    def test_redirect_hosts_are_split_and_lowercased(self) -> None:
        configured = Settings(allowed_redirect_hosts=" App.Example.com, ,api.example.com")
        assert configured.redirect_hosts == ["app.example.com", "api.example.com"]


@pytest.mark.unit
class TestStripePayloads:
    def test_checkout_session_normalizes_expandable_references(self) -> None:
        session = CheckoutSessionSnapshot.model_validate(
            {
                "id": "cs_1",
                "mode": "payment",
                "status": "complete",
                "payment_status": "unpaid",
                "customer": {"id": "cus_1", "object": "customer"},
                "payment_intent": {
                    "id": "pi_1",
                    "status": "requires_capture",
                    "latest_charge": {"id": "ch_1"},
                },
                "metadata": {"paymentId": "pay_1"},
                "unexpected_field": "ignored",
            }
        )
        assert session.customer == "cus_1"
        assert session.payment_intent_id == "pi_1"
        assert session.charge_id == "ch_1"
        assert session.metadata_payment_id == "pay_1"
        assert session.is_paid is False
        # An uncaptured manual-capture hold still counts as collected
        assert session.is_collected is True

    def test_string_payment_intent_is_expanded(self) -> None:
        session = CheckoutSessionSnapshot.model_validate({"id": "cs_2", "payment_intent": "pi_2"})
        assert session.payment_intent_id == "pi_2"
        assert session.charge_id is None
        assert session.is_collected is False

    def test_no_payment_required_counts_as_paid(self) -> None:
        session = CheckoutSessionSnapshot.model_validate(
            {"id": "cs_3", "status": "complete", "payment_status": "no_payment_required"}
        )
        assert session.is_paid is True

    def test_payment_intent_status_helpers(self) -> None:
        assert PaymentIntentSnapshot(id="pi", status="succeeded").is_authorized_or_paid
        assert PaymentIntentSnapshot(id="pi", status="requires_capture").is_authorized_or_paid
        assert not PaymentIntentSnapshot(id="pi", status="requires_payment_method").is_authorized_or_paid

    def test_charge_captured_cents_falls_back_to_amount(self) -> None:
        assert ChargeSnapshot(id="ch", amount=5000).captured_cents == 5000
        assert ChargeSnapshot(id="ch", amount=5000, amount_captured=4000).captured_cents == 4000

    def test_setup_intent_details_from_dict(self) -> None:
        details = SetupIntentDetails.from_stripe(
            {"id": "seti_1", "customer": "cus_1", "payment_method": {"id": "pm_1", "type": "card"}}
        )
        assert details.setup_intent_id == "seti_1"
        assert details.customer_id == "cus_1"
        assert details.payment_method_id == "pm_1"

    def test_event_envelope_object_as(self) -> None:
        event = StripeEventEnvelope.from_stripe(
            {"id": "evt_1", "type": "charge.refunded", "data": {"object": {"id": "ch_1", "amount_refunded": 100}}}
        )
        charge = event.object_as(ChargeSnapshot)
        assert charge.id == "ch_1"
        assert charge.amount_refunded == 100


@pytest.mark.unit
def test_diff_events_reports_added_removed_and_unchanged() -> None:
    diff = diff_events(["charge.refunded", "invoice.paid"], ["charge.refunded", "account.updated"])
    assert diff.added == ["account.updated"]
    assert diff.removed == ["invoice.paid"]
    assert diff.unchanged == ["charge.refunded"]
