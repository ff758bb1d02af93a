"""
Payment lifecycle result and request schemas.

State-changing handlers that may be invoked speculatively (webhooks,
redirect reconciliation, the stale sweep, scheduled actions) report a
structured outcome instead of raising, so callers can tell "nothing to do"
apart from a genuine failure.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ._strict_base import StrictModel, StrictRequestModel
from .base import Money


class TransitionReason(str, Enum):
    PAYMENT_NOT_FOUND = "payment_not_found"
    DUPLICATE_EVENT = "duplicate_event"
    ALREADY_PAID = "already_paid"
    ALREADY_AUTHORIZED = "already_authorized"
    CANCELLED = "cancelled"
    PAYMENT_NOT_PAYABLE = "payment_not_payable"
    PAYMENT_NOT_WAITING_FOR_METHOD = "payment_not_waiting_for_method"
    BOOKING_NOT_FOUND = "booking_not_found"
    BOOKING_CONFLICT_ON_ACTIVATION = "booking_conflict_on_activation"
    SETUP_SESSION_NOT_COMPLETE = "setup_session_not_complete"
    UNSUPPORTED_CHECKOUT_MODE = "unsupported_checkout_mode"
    CHECKOUT_NOT_PAID = "checkout_not_paid"
    STRIPE_FETCH_FAILED = "stripe_fetch_failed"
    STRATEGY_MISMATCH = "strategy_mismatch"
    NOT_APPLICABLE = "not_applicable"


# A fallback lookup is only worth trying when the previous one found nothing to pay
FALLBACK_REASONS = frozenset(
    {TransitionReason.PAYMENT_NOT_FOUND.value, TransitionReason.PAYMENT_NOT_PAYABLE.value}
)

# Outcomes that do not count as "the sweep fixed this payment"
UNRESOLVED_REASONS = FALLBACK_REASONS | {TransitionReason.CANCELLED.value}


class TransitionResult(BaseModel):
    """Outcome of applying one processor fact to a Payment/Booking pair."""

    ok: bool
    reason: Optional[str] = None
    payment_id: Optional[str] = None
    booking_id: Optional[str] = None
    payment_strategy: Optional[str] = None

    @classmethod
    def success(cls, reason: Optional[TransitionReason] = None, **kwargs: Any) -> "TransitionResult":
        return cls(ok=True, reason=reason.value if reason else None, **kwargs)

    @classmethod
    def failure(cls, reason: TransitionReason, **kwargs: Any) -> "TransitionResult":
        return cls(ok=False, reason=reason.value, **kwargs)

    @property
    def is_duplicate(self) -> bool:
        return self.reason == TransitionReason.DUPLICATE_EVENT.value


def should_fallback(result: Optional[TransitionResult]) -> bool:
    return result is None or not result.ok or result.reason in FALLBACK_REASONS


class CheckoutReconcileResult(BaseModel):
    """Result of applying a fetched (or delivered) checkout session."""

    ok: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    session_id: str
    mode: Optional[str] = None
    setup_result: Optional[TransitionResult] = None
    primary: Optional[TransitionResult] = None
    fallback_by_payment_id: Optional[TransitionResult] = None
    fallback_by_payment_intent: Optional[TransitionResult] = None

    def attempts(self) -> List[TransitionResult]:
        return [
            result
            for result in (self.primary, self.fallback_by_payment_id, self.fallback_by_payment_intent)
            if result is not None
        ]

    @property
    def resolved(self) -> bool:
        if self.setup_result is not None:
            return self.setup_result.ok
        return any(
            attempt.ok and attempt.reason not in UNRESOLVED_REASONS for attempt in self.attempts()
        )

    @property
    def final(self) -> Optional[TransitionResult]:
        """The attempt whose outcome describes the payment now."""
        if self.setup_result is not None:
            return self.setup_result
        attempts = self.attempts()
        for attempt in attempts:
            if attempt.ok and attempt.reason not in UNRESOLVED_REASONS:
                return attempt
        return attempts[-1] if attempts else None


class StaleSweepItem(BaseModel):
    payment_id: str
    session_id: Optional[str] = None
    outcome: Literal["reconciled", "skipped", "errored"]
    reasons: List[str] = Field(default_factory=list)


class StaleSweepResult(BaseModel):
    scanned: int = 0
    reconciled: int = 0
    skipped: int = 0
    errored: int = 0
    limit: int
    older_than_ms: int
    results: List[StaleSweepItem] = Field(default_factory=list)


class AutoChargeResult(BaseModel):
    charged: bool
    reason: Optional[str] = None
    payment_intent_id: Optional[str] = None
    transition: Optional[TransitionResult] = None


class CaptureResult(BaseModel):
    captured: bool
    reason: Optional[str] = None
    capture_status: Optional[str] = None


class PayoutReleaseResult(BaseModel):
    released: bool
    reason: Optional[str] = None
    transfer_id: Optional[str] = None


class DepositRefundResult(BaseModel):
    refunded: bool
    reason: Optional[str] = None
    refund_id: Optional[str] = None


class ConflictRefundResult(BaseModel):
    refunded: bool
    reason: Optional[str] = None
    refund_id: Optional[str] = None


# ========== API models ==========


class ReconcileCheckoutRequest(StrictRequestModel):
    session_id: str = Field(..., min_length=1, description="Stripe Checkout Session id")


class ReconcileStaleRequest(StrictRequestModel):
    limit: Optional[int] = Field(default=None, ge=1, le=500)
    older_than_minutes: Optional[int] = Field(default=None, ge=0)


class WebhookResponse(StrictModel):
    """Acknowledgement returned to Stripe."""

    status: Literal["processed", "ignored", "duplicate", "failed"]
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class EventDiff(StrictModel):
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)


class WebhookEndpointSetupResult(StrictModel):
    mode: Literal["created", "updated"]
    endpoint_id: str
    endpoint_url: str
    enabled_events: List[str]
    event_diff: EventDiff


class StrategyBackfillResult(StrictModel):
    scanned: int
    updated: int


class PaymentSummary(StrictModel):
    """Payment fields safe to show a renter or host."""

    id: str
    status: str
    payout_status: str
    payment_strategy: Optional[str] = None
    capture_status: Optional[str] = None
    currency: str
    rental_amount: Money
    platform_fee_amount: Money
    host_amount: Money
    deposit_amount: Money
    total_amount: Money
    deposit_status: Optional[str] = None
    deposit_refund_amount: Optional[Money] = None
    deposit_claim_window_ends_at: Optional[datetime] = None
    payment_due_at: Optional[datetime] = None
    release_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @classmethod
    def from_payment(cls, payment: Any) -> "PaymentSummary":
        return cls(
            id=payment.id,
            status=payment.status,
            payout_status=payment.payout_status,
            payment_strategy=payment.payment_strategy,
            capture_status=payment.capture_status,
            currency=payment.currency,
            rental_amount=payment.rental_amount,
            platform_fee_amount=payment.platform_fee_amount,
            host_amount=payment.host_amount,
            deposit_amount=payment.deposit_amount or 0,
            total_amount=payment.total_amount,
            deposit_status=payment.deposit_status,
            deposit_refund_amount=payment.deposit_refund_amount,
            deposit_claim_window_ends_at=payment.deposit_claim_window_ends_at,
            payment_due_at=payment.payment_due_at,
            release_at=payment.release_at,
            paid_at=payment.paid_at,
        )
