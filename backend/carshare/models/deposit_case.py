# backend/carshare/models/deposit_case.py
"""Post-trip dispute over a held security deposit."""

from enum import Enum

from sqlalchemy import Column, ForeignKey, Numeric, String, Text

from .types import Base, TimestampMixin, UTCDateTime, new_ulid


class DepositCaseStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    PARTIALLY_APPROVED = "partially_approved"
    REJECTED = "rejected"


class DepositCaseResolution(str, Enum):
    APPROVE = "approve"
    PARTIAL = "partial"
    REJECT = "reject"


# At most one case in any of these statuses may exist per payment
ACTIVE_DEPOSIT_CASE_STATUSES = (
    DepositCaseStatus.OPEN.value,
    DepositCaseStatus.UNDER_REVIEW.value,
    DepositCaseStatus.APPROVED.value,
    DepositCaseStatus.PARTIALLY_APPROVED.value,
)

# Cases support can still act on
RESOLVABLE_DEPOSIT_CASE_STATUSES = (
    DepositCaseStatus.OPEN.value,
    DepositCaseStatus.UNDER_REVIEW.value,
)


class DepositCase(TimestampMixin, Base):
    __tablename__ = "deposit_cases"

    id = Column(String(26), primary_key=True, default=new_ulid)
    payment_id = Column(String(26), ForeignKey("payments.id"), nullable=False, index=True)
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=False, index=True)
    host_id = Column(String(26), ForeignKey("hosts.id"), nullable=False)
    renter_id = Column(String(26), ForeignKey("users.id"), nullable=False)

    requested_amount = Column(Numeric(10, 2), nullable=False)
    resolution_amount = Column(Numeric(10, 2), nullable=True)
    status = Column(String(20), nullable=False, default=DepositCaseStatus.OPEN.value)
    reason = Column(Text, nullable=False)

    resolved_by_user_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<DepositCase {self.id} payment={self.payment_id} status={self.status}>"
