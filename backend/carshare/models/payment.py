# backend/carshare/models/payment.py
"""
Payment model: the single source of truth for money state of one booking.
"""

from decimal import Decimal
from enum import Enum

from sqlalchemy import Column, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import relationship

from .types import Base, TimestampMixin, UTCDateTime, new_ulid


class PaymentStatus(str, Enum):
    METHOD_COLLECTION_PENDING = "method_collection_pending"
    METHOD_SAVED = "method_saved"
    CHECKOUT_CREATED = "checkout_created"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentStrategy(str, Enum):
    DESTINATION_MANUAL_CAPTURE = "destination_manual_capture"
    PLATFORM_TRANSFER_FALLBACK = "platform_transfer_fallback"


class CaptureStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING_CAPTURE = "pending_capture"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    EXPIRED = "expired"


class PayoutStatus(str, Enum):
    BLOCKED = "blocked"
    ELIGIBLE = "eligible"
    TRANSFERRED = "transferred"
    REVERSED = "reversed"
    ERROR = "error"


class DepositStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    HELD = "held"
    CASE_SUBMITTED = "case_submitted"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    RETAINED = "retained"


# Payment has not yet captured money from the renter
PRE_CAPTURE_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.METHOD_COLLECTION_PENDING.value,
        PaymentStatus.METHOD_SAVED.value,
        PaymentStatus.CHECKOUT_CREATED.value,
        PaymentStatus.FAILED.value,
        PaymentStatus.CANCELLED.value,
    }
)

# Statuses from which a checkout may still turn into a paid payment
PAYABLE_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.METHOD_COLLECTION_PENDING.value,
        PaymentStatus.METHOD_SAVED.value,
        PaymentStatus.CHECKOUT_CREATED.value,
    }
)

# Money went back to the renter or is contested; payouts must stay blocked
PAYOUT_BLOCKING_STATUSES = frozenset(
    {
        PaymentStatus.DISPUTED.value,
        PaymentStatus.REFUNDED.value,
        PaymentStatus.PARTIALLY_REFUNDED.value,
    }
)


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"

    __table_args__ = (Index("ix_payments_status_updated_at", "status", "updated_at"),)

    id = Column(String(26), primary_key=True, default=new_ulid)
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=False, unique=True)
    car_id = Column(String(26), ForeignKey("cars.id"), nullable=False)
    renter_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    host_id = Column(String(26), ForeignKey("hosts.id"), nullable=False, index=True)

    stripe_checkout_session_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_setup_intent_id = Column(String(255), nullable=True)
    stripe_payment_method_id = Column(String(255), nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    stripe_charge_id = Column(String(255), nullable=True)
    stripe_transfer_id = Column(String(255), nullable=True)
    stripe_transfer_reversal_id = Column(String(255), nullable=True)

    currency = Column(String(3), nullable=False, default="usd")
    payment_strategy = Column(
        String(40), nullable=True, default=PaymentStrategy.PLATFORM_TRANSFER_FALLBACK.value
    )
    capture_status = Column(String(20), nullable=True, default=CaptureStatus.NOT_REQUIRED.value)

    rental_amount = Column(Numeric(10, 2), nullable=False)
    platform_fee_amount = Column(Numeric(10, 2), nullable=False)
    host_amount = Column(Numeric(10, 2), nullable=False)
    deposit_amount = Column(Numeric(10, 2), nullable=True, default=0)
    deposit_status = Column(String(20), nullable=True, default=DepositStatus.NOT_APPLICABLE.value)
    deposit_refund_amount = Column(Numeric(10, 2), nullable=True)
    deposit_claim_window_ends_at = Column(UTCDateTime, nullable=True)

    payment_due_at = Column(UTCDateTime, nullable=True)
    status = Column(
        String(30), nullable=False, default=PaymentStatus.METHOD_COLLECTION_PENDING.value
    )
    payout_status = Column(String(20), nullable=False, default=PayoutStatus.BLOCKED.value)
    release_at = Column(UTCDateTime, nullable=False)
    paid_at = Column(UTCDateTime, nullable=True)

    last_processed_event_id = Column(String(255), nullable=True)

    booking = relationship("Booking", foreign_keys=[booking_id])
    car = relationship("Car")
    host = relationship("Host")

    @property
    def total_amount(self) -> Decimal:
        """What the renter is charged: rental, platform fee and refundable deposit."""
        return (
            Decimal(self.rental_amount or 0)
            + Decimal(self.platform_fee_amount or 0)
            + Decimal(self.deposit_amount or 0)
        )

    @property
    def is_manual_capture(self) -> bool:
        return self.payment_strategy == PaymentStrategy.DESTINATION_MANUAL_CAPTURE.value

    def __repr__(self) -> str:
        return f"<Payment {self.id} status={self.status} payout={self.payout_status}>"
