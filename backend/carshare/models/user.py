# backend/carshare/models/user.py
"""User accounts: renters, hosts and support staff."""

from enum import Enum

from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from .types import Base, TimestampMixin, new_ulid


class UserRole(str, Enum):
    RENTER = "renter"
    HOST = "host"
    SUPPORT = "support"
    ADMIN = "admin"


SUPPORT_ROLES = frozenset({UserRole.SUPPORT.value, UserRole.ADMIN.value})


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id = Column(String(26), primary_key=True, default=new_ulid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    role = Column(String(20), nullable=False, default=UserRole.RENTER.value)
    stripe_customer_id = Column(String(255), nullable=True)

    host_profile = relationship("Host", back_populates="user", uselist=False)

    @property
    def is_support(self) -> bool:
        return self.role in SUPPORT_ROLES

    def __repr__(self) -> str:
        return f"<User {self.id} role={self.role}>"
