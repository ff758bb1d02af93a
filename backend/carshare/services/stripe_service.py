# backend/carshare/services/stripe_service.py
"""
Stripe gateway for the reservation payment lifecycle.

Every outbound Stripe call made by the backend goes through this class.
Amounts arrive in major units and leave as integer cents; every mutating
call carries a caller-supplied idempotency key so a retried request can
never double-charge, double-transfer or double-refund.

Responses are validated into the boundary types in
``carshare.schemas.stripe_payloads`` before they reach the lifecycle
services.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
import stripe

from ..core.config import settings
from ..core.exceptions import PaymentProcessorException, ServiceException, ValidationException
from ..models.payment import Payment
from ..schemas.stripe_payloads import (
    CheckoutSessionSnapshot,
    PaymentIntentSnapshot,
    SetupIntentDetails,
    StripeEventEnvelope,
    expandable_id,
    stripe_to_dict,
)
from ..utils.money import Amount, to_cents
from ..utils.time_utils import Clock
from .base import BaseService

# Failures worth retrying on the next scheduler firing
TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

PURPOSE_INITIAL_PAYMENT = "reservation_initial_payment"
PURPOSE_PAY_NOW = "reservation_pay_now"
PURPOSE_AUTO_CHARGE = "auto_charge_due"


class StripeService(BaseService):
    """
    Thin, typed wrapper around the Stripe SDK.

    Holds no booking rules: callers decide what to charge and when, this
    class only shapes the request, attaches the idempotency key and maps
    SDK errors to ``PaymentProcessorException``.
    """

    def __init__(self, db: Session, now: Optional[Clock] = None):
        super().__init__(db, now)
        self.stripe_configured = False
        secret_key = settings.stripe_secret_key.get_secret_value()
        if secret_key:
            stripe.api_key = secret_key
            stripe.max_network_retries = settings.stripe_max_network_retries
            self.stripe_configured = True
        else:
            self.logger.warning("Stripe secret key not configured - processor calls will fail")

    def _check_stripe_configured(self) -> None:
        if not self.stripe_configured:
            raise ServiceException(
                "Stripe service not configured. Please check STRIPE_SECRET_KEY environment variable."
            )

    def _processor_error(self, action: str, exc: stripe.StripeError) -> PaymentProcessorException:
        transient = isinstance(exc, TRANSIENT_STRIPE_ERRORS)
        message = getattr(exc, "user_message", None) or str(exc)
        if transient:
            self.logger.warning(f"Transient Stripe error during {action}: {message}")
        else:
            self.logger.error(f"Stripe error during {action}: {message}")
        return PaymentProcessorException(
            f"PROCESSOR_ERROR: Failed to {action}: {message}",
            transient=transient,
            details={"stripe_code": getattr(exc, "code", None), "stripe_message": message},
        )

    @staticmethod
    def _line_item(name: str, amount: Amount, currency: str) -> Dict[str, Any]:
        return {
            "price_data": {
                "currency": currency,
                "product_data": {"name": name},
                "unit_amount": to_cents(amount),
            },
            "quantity": 1,
        }

    @staticmethod
    def _payment_metadata(payment: Payment, purpose: Optional[str] = None) -> Dict[str, str]:
        metadata = {"paymentId": str(payment.id), "bookingId": str(payment.booking_id)}
        if purpose:
            metadata["paymentPurpose"] = purpose
        return metadata

    # ------------------------------------------------------------------ #
    # Customers and checkout sessions
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("stripe_create_customer")
    def create_customer(self, *, renter_id: str, email: str, name: Optional[str] = None) -> str:
        self._check_stripe_configured()
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name or None,
                metadata={"renterId": renter_id},
                idempotency_key=f"customer-{renter_id}",
            )
        except stripe.StripeError as e:
            raise self._processor_error("create customer", e) from e
        customer_id = expandable_id(customer)
        if not customer_id:
            raise PaymentProcessorException("PROCESSOR_ERROR: Stripe returned no customer id.")
        self.logger.info(f"Created Stripe customer {customer_id} for renter {renter_id}")
        return customer_id

    @BaseService.measure_operation("stripe_create_payment_checkout_session")
    def create_payment_checkout_session(
        self,
        payment: Payment,
        *,
        car_name: str,
        days: int,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
        purpose: str = PURPOSE_INITIAL_PAYMENT,
        destination_account_id: Optional[str] = None,
    ) -> CheckoutSessionSnapshot:
        """
        Open a payment-mode Checkout Session for the full reservation total.

        With ``destination_account_id`` the charge is authorized only
        (manual capture) and the host's share is routed to their connected
        account when it is captured at trip end.
        """
        self._check_stripe_configured()
        currency = payment.currency or settings.stripe_currency
        line_items = [
            self._line_item(f"{car_name} rental ({days} days)", payment.rental_amount, currency),
            self._line_item(
                f"Service fee ({settings.platform_fee_percentage:g}%)",
                payment.platform_fee_amount,
                currency,
            ),
        ]
        if to_cents(payment.deposit_amount) > 0:
            line_items.append(self._line_item("Security deposit", payment.deposit_amount, currency))

        metadata = self._payment_metadata(payment, purpose)
        payment_intent_data: Dict[str, Any] = {"metadata": metadata}
        if destination_account_id:
            payment_intent_data["capture_method"] = "manual"
            payment_intent_data["transfer_data"] = {
                "destination": destination_account_id,
                "amount": to_cents(payment.host_amount),
            }

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                customer=payment.stripe_customer_id,
                payment_method_types=["card"],
                line_items=line_items,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                payment_intent_data=payment_intent_data,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise self._processor_error("create checkout session", e) from e

        snapshot = CheckoutSessionSnapshot.from_stripe(session)
        self.logger.info(
            f"Created payment checkout {snapshot.id} for payment {payment.id} (key={idempotency_key})"
        )
        return snapshot

    @BaseService.measure_operation("stripe_create_setup_checkout_session")
    def create_setup_checkout_session(
        self,
        payment: Payment,
        *,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> CheckoutSessionSnapshot:
        """Open a setup-mode session that saves a card for the due-date auto-charge."""
        self._check_stripe_configured()
        metadata = self._payment_metadata(payment)
        try:
            session = stripe.checkout.Session.create(
                mode="setup",
                customer=payment.stripe_customer_id,
                payment_method_types=["card"],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                setup_intent_data={"metadata": metadata},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise self._processor_error("create setup session", e) from e

        snapshot = CheckoutSessionSnapshot.from_stripe(session)
        self.logger.info(
            f"Created setup checkout {snapshot.id} for payment {payment.id} (key={idempotency_key})"
        )
        return snapshot

    @BaseService.measure_operation("stripe_retrieve_checkout_session")
    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        self._check_stripe_configured()
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["payment_intent"])
        except stripe.StripeError as e:
            raise self._processor_error("retrieve checkout session", e) from e
        return CheckoutSessionSnapshot.from_stripe(session)

    @BaseService.measure_operation("stripe_fetch_setup_intent_payment_method")
    def fetch_setup_intent_payment_method(self, setup_intent_id: str) -> SetupIntentDetails:
        self._check_stripe_configured()
        try:
            setup_intent = stripe.SetupIntent.retrieve(setup_intent_id, expand=["payment_method"])
        except stripe.StripeError as e:
            raise self._processor_error("retrieve setup intent", e) from e
        return SetupIntentDetails.from_stripe(setup_intent)

    # ------------------------------------------------------------------ #
    # Money movement
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("stripe_create_off_session_payment_intent")
    def create_off_session_payment_intent(
        self,
        payment: Payment,
        *,
        idempotency_key: str,
        destination_account_id: Optional[str] = None,
    ) -> PaymentIntentSnapshot:
        """Charge the saved card for the reservation total without the renter present."""
        self._check_stripe_configured()
        params: Dict[str, Any] = {
            "amount": to_cents(payment.total_amount),
            "currency": payment.currency or settings.stripe_currency,
            "customer": payment.stripe_customer_id,
            "payment_method": payment.stripe_payment_method_id,
            "off_session": True,
            "confirm": True,
            "metadata": self._payment_metadata(payment, PURPOSE_AUTO_CHARGE),
        }
        if destination_account_id:
            params["capture_method"] = "manual"
            params["transfer_data"] = {
                "destination": destination_account_id,
                "amount": to_cents(payment.host_amount),
            }
        self.logger.info(f"Auto-charging payment {payment.id} (key={idempotency_key})")
        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            raise self._processor_error("charge saved payment method", e) from e
        return PaymentIntentSnapshot.model_validate(stripe_to_dict(intent))

    @BaseService.measure_operation("stripe_capture_payment_intent")
    def capture_payment_intent(
        self, payment_intent_id: str, *, idempotency_key: str
    ) -> PaymentIntentSnapshot:
        self._check_stripe_configured()
        self.logger.info(f"Capturing payment intent {payment_intent_id} (key={idempotency_key})")
        try:
            intent = stripe.PaymentIntent.capture(payment_intent_id, idempotency_key=idempotency_key)
        except stripe.StripeError as e:
            raise self._processor_error("capture payment", e) from e
        return PaymentIntentSnapshot.model_validate(stripe_to_dict(intent))

    @BaseService.measure_operation("stripe_cancel_payment_intent")
    def cancel_payment_intent(
        self, payment_intent_id: str, *, idempotency_key: str
    ) -> PaymentIntentSnapshot:
        """Release an uncaptured authorization."""
        self._check_stripe_configured()
        self.logger.info(f"Cancelling payment intent {payment_intent_id} (key={idempotency_key})")
        try:
            intent = stripe.PaymentIntent.cancel(payment_intent_id, idempotency_key=idempotency_key)
        except stripe.StripeError as e:
            raise self._processor_error("cancel payment", e) from e
        return PaymentIntentSnapshot.model_validate(stripe_to_dict(intent))

    @BaseService.measure_operation("stripe_create_transfer")
    def create_transfer(
        self,
        *,
        amount: Amount,
        currency: str,
        destination: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> str:
        self._check_stripe_configured()
        self.logger.info(f"Transferring {amount} {currency} to {destination} (key={idempotency_key})")
        try:
            transfer = stripe.Transfer.create(
                amount=to_cents(amount),
                currency=currency,
                destination=destination,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise self._processor_error("create transfer", e) from e
        transfer_id = expandable_id(transfer)
        if not transfer_id:
            raise PaymentProcessorException("PROCESSOR_ERROR: Stripe returned no transfer id.")
        return transfer_id

    @BaseService.measure_operation("stripe_reverse_transfer")
    def create_transfer_reversal(
        self,
        transfer_id: str,
        *,
        amount: Amount,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        self._check_stripe_configured()
        self.logger.info(f"Reversing transfer {transfer_id} (key={idempotency_key})")
        kwargs: Dict[str, Any] = {"amount": to_cents(amount)}
        if metadata:
            kwargs["metadata"] = metadata
        try:
            # create_reversal takes the transfer id positionally
            reversal = stripe.Transfer.create_reversal(
                transfer_id, idempotency_key=idempotency_key, **kwargs
            )
        except stripe.StripeError as e:
            raise self._processor_error("reverse transfer", e) from e
        reversal_id = expandable_id(reversal)
        if not reversal_id:
            raise PaymentProcessorException("PROCESSOR_ERROR: Stripe returned no reversal id.")
        return reversal_id

    @BaseService.measure_operation("stripe_create_refund")
    def create_refund(
        self,
        *,
        amount: Amount,
        idempotency_key: str,
        charge_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        self._check_stripe_configured()
        if not charge_id and not payment_intent_id:
            raise ValidationException("INVALID_INPUT: A refund needs a charge or payment intent.")
        params: Dict[str, Any] = {"amount": to_cents(amount), "metadata": metadata or {}}
        if charge_id:
            params["charge"] = charge_id
        else:
            params["payment_intent"] = payment_intent_id
        self.logger.info(f"Refunding {amount} (key={idempotency_key})")
        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            raise self._processor_error("create refund", e) from e
        refund_id = expandable_id(refund)
        if not refund_id:
            raise PaymentProcessorException("PROCESSOR_ERROR: Stripe returned no refund id.")
        return refund_id

    # ------------------------------------------------------------------ #
    # Webhooks
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("stripe_construct_webhook_event")
    def construct_webhook_event(
        self, payload: bytes, signature: Optional[str]
    ) -> StripeEventEnvelope:
        """
        Verify the ``Stripe-Signature`` header (timestamp + HMAC) and parse the event.

        Raises:
            ValidationException: missing or invalid signature, or malformed body
            ServiceException: no webhook secret configured
        """
        webhook_secret = settings.stripe_webhook_secret.get_secret_value()
        if not webhook_secret:
            raise ServiceException("Webhook secret not configured")
        if not signature:
            self.logger.warning("Missing Stripe signature header")
            raise ValidationException("INVALID_INPUT: Missing stripe-signature header.")
        try:
            event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError:
            self.logger.warning("Invalid webhook signature")
            raise ValidationException("INVALID_INPUT: Invalid webhook signature.")
        except ValueError as e:
            self.logger.warning(f"Invalid webhook payload: {str(e)}")
            raise ValidationException("INVALID_INPUT: Invalid webhook payload.")
        return StripeEventEnvelope.from_stripe(event)

    @BaseService.measure_operation("stripe_list_webhook_endpoints")
    def list_webhook_endpoints(self) -> List[Dict[str, Any]]:
        self._check_stripe_configured()
        try:
            listing = stripe.WebhookEndpoint.list(limit=100)
        except stripe.StripeError as e:
            raise self._processor_error("list webhook endpoints", e) from e
        return [stripe_to_dict(item) for item in stripe_to_dict(listing).get("data", [])]

    @BaseService.measure_operation("stripe_create_webhook_endpoint")
    def create_webhook_endpoint(self, *, url: str, enabled_events: List[str]) -> Dict[str, Any]:
        self._check_stripe_configured()
        try:
            endpoint = stripe.WebhookEndpoint.create(url=url, enabled_events=enabled_events)
        except stripe.StripeError as e:
            raise self._processor_error("create webhook endpoint", e) from e
        return stripe_to_dict(endpoint)

    @BaseService.measure_operation("stripe_update_webhook_endpoint")
    def update_webhook_endpoint(
        self, endpoint_id: str, *, enabled_events: List[str]
    ) -> Dict[str, Any]:
        self._check_stripe_configured()
        try:
            endpoint = stripe.WebhookEndpoint.modify(endpoint_id, enabled_events=enabled_events)
        except stripe.StripeError as e:
            raise self._processor_error("update webhook endpoint", e) from e
        return stripe_to_dict(endpoint)
