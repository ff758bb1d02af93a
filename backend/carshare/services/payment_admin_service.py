# backend/carshare/services/payment_admin_service.py
"""
Operational tasks for the payment lifecycle: registering the Stripe webhook
endpoint and filling lifecycle fields on payments created before they
existed.
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import ServiceException
from ..models.payment import (
    CaptureStatus,
    DepositStatus,
    PaymentStatus,
    PaymentStrategy,
)
from ..repositories import RepositoryFactory
from ..schemas.payment_schemas import EventDiff, StrategyBackfillResult, WebhookEndpointSetupResult
from ..schemas.stripe_payloads import SetupIntentDetails
from ..utils.money import quantize_amount, to_cents
from ..utils.time_utils import Clock, as_utc
from .base import BaseService
from .stripe_event_service import STRIPE_WEBHOOK_EVENTS
from .stripe_service import StripeService


def diff_events(current: List[str], desired: List[str]) -> EventDiff:
    return EventDiff(
        added=sorted(set(desired) - set(current)),
        removed=sorted(set(current) - set(desired)),
        unchanged=sorted(set(current) & set(desired)),
    )


class PaymentAdminService(BaseService):
    def __init__(
        self,
        db: Session,
        now: Optional[Clock] = None,
        stripe_service: Optional[StripeService] = None,
    ):
        super().__init__(db, now)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.stripe_service = stripe_service or StripeService(db, now=now)

    @BaseService.measure_operation("setup_webhook_endpoint")
    def setup_webhook_endpoint(self) -> WebhookEndpointSetupResult:
        """
        Create the webhook endpoint for ``settings.stripe_webhook_url`` or
        bring an existing one's enabled events in line.
        """
        url = settings.stripe_webhook_url.strip()
        if not url:
            raise ServiceException("STRIPE_WEBHOOK_URL is not configured")
        desired = list(STRIPE_WEBHOOK_EVENTS)

        existing = next(
            (endpoint for endpoint in self.stripe_service.list_webhook_endpoints() if endpoint.get("url") == url),
            None,
        )
        if existing is None:
            created = self.stripe_service.create_webhook_endpoint(url=url, enabled_events=desired)
            self.logger.info(f"Created Stripe webhook endpoint {created.get('id')} for {url}")
            return WebhookEndpointSetupResult(
                mode="created",
                endpoint_id=str(created.get("id")),
                endpoint_url=url,
                enabled_events=desired,
                event_diff=diff_events([], desired),
            )

        current = [str(event) for event in existing.get("enabled_events") or []]
        updated = self.stripe_service.update_webhook_endpoint(
            str(existing.get("id")), enabled_events=desired
        )
        event_diff = diff_events(current, desired)
        self.logger.info(
            f"Updated Stripe webhook endpoint {updated.get('id')}: "
            f"+{len(event_diff.added)} -{len(event_diff.removed)}"
        )
        return WebhookEndpointSetupResult(
            mode="updated",
            endpoint_id=str(updated.get("id") or existing.get("id")),
            endpoint_url=url,
            enabled_events=desired,
            event_diff=event_diff,
        )

    @BaseService.measure_operation("backfill_payment_strategy")
    def backfill_payment_strategy(self, limit: Optional[int] = None) -> StrategyBackfillResult:
        """Fill lifecycle fields missing on legacy payments. Existing values are kept."""
        payments = self.payment_repository.list_needing_strategy_backfill(limit)
        updated = 0
        with self.transaction():
            for payment in payments:
                booking = payment.booking
                if booking is None:
                    continue
                changed = False
                if not payment.payment_strategy:
                    payment.payment_strategy = PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
                    changed = True
                if not payment.capture_status:
                    payment.capture_status = CaptureStatus.NOT_REQUIRED.value
                    changed = True
                if payment.payment_due_at is None:
                    payment.payment_due_at = as_utc(booking.start_date) - timedelta(
                        hours=settings.payment_due_lead_hours
                    )
                    changed = True
                if payment.deposit_amount is None:
                    car = payment.car
                    payment.deposit_amount = quantize_amount(car.deposit_amount if car else 0)
                    changed = True
                if payment.deposit_claim_window_ends_at is None:
                    payment.deposit_claim_window_ends_at = as_utc(booking.end_date) + timedelta(
                        hours=settings.deposit_claim_window_hours
                    )
                    changed = True
                if payment.deposit_status is None:
                    has_deposit = to_cents(payment.deposit_amount) > 0
                    payment.deposit_status = (
                        DepositStatus.HELD.value
                        if has_deposit and payment.status == PaymentStatus.PAID.value
                        else DepositStatus.NOT_APPLICABLE.value
                    )
                    changed = True
                if payment.paid_at is None and payment.status == PaymentStatus.PAID.value:
                    payment.paid_at = payment.updated_at or payment.created_at
                    changed = True
                if payment.stripe_customer_id is None:
                    renter = booking.renter
                    if renter is not None and renter.stripe_customer_id:
                        payment.stripe_customer_id = renter.stripe_customer_id
                        changed = True
                if changed:
                    payment.updated_at = self.now()
                    updated += 1

        self.logger.info(f"Strategy backfill: scanned={len(payments)} updated={updated}")
        return StrategyBackfillResult(scanned=len(payments), updated=updated)

    def fetch_setup_intent_payment_method(self, setup_intent_id: str) -> SetupIntentDetails:
        return self.stripe_service.fetch_setup_intent_payment_method(setup_intent_id)
