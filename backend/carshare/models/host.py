# backend/carshare/models/host.py
"""Host payout profile, mirrored from the host's Stripe Connect account."""

from sqlalchemy import Boolean, Column, ForeignKey, String
from sqlalchemy.orm import relationship

from .types import Base, TimestampMixin, new_ulid


class Host(TimestampMixin, Base):
    __tablename__ = "hosts"

    id = Column(String(26), primary_key=True, default=new_ulid)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, unique=True)

    stripe_connect_account_id = Column(String(255), nullable=True, index=True)
    stripe_onboarding_complete = Column(Boolean, nullable=False, default=False)
    stripe_charges_enabled = Column(Boolean, nullable=False, default=False)
    stripe_payouts_enabled = Column(Boolean, nullable=False, default=False)
    is_verified = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="host_profile")
    cars = relationship("Car", back_populates="host")

    @property
    def can_receive_payouts(self) -> bool:
        """Connect account exists, onboarding is done and payouts are switched on."""
        return bool(
            self.stripe_connect_account_id
            and self.stripe_onboarding_complete
            and self.stripe_payouts_enabled
        )

    def __repr__(self) -> str:
        return f"<Host {self.id} account={self.stripe_connect_account_id}>"
