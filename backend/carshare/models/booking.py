# backend/carshare/models/booking.py
"""
Booking model.

A booking reserves one car for an inclusive [start_date, end_date] range.
Its status is derived from the payment and is only ever changed in the same
transaction that changes the linked Payment.
"""

from enum import Enum

from sqlalchemy import Column, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import relationship

from .types import Base, TimestampMixin, UTCDateTime, new_ulid


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


# Statuses that hold the car's dates against other renters
BLOCKING_BOOKING_STATUSES = (BookingStatus.PAYMENT_PENDING.value, BookingStatus.CONFIRMED.value)


class CollectionMethod(str, Enum):
    IN_PERSON = "in_person"
    LOCKBOX = "lockbox"
    HOST_DELIVERY = "host_delivery"


class Booking(TimestampMixin, Base):
    __tablename__ = "bookings"

    __table_args__ = (Index("ix_bookings_car_status", "car_id", "status"),)

    id = Column(String(26), primary_key=True, index=True, default=new_ulid)
    car_id = Column(String(26), ForeignKey("cars.id"), nullable=False)
    renter_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)

    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    total_price = Column(Numeric(10, 2), nullable=False)

    payment_id = Column(String(26), nullable=True, index=True)
    checkout_session_id = Column(String(255), nullable=True)

    collection_method = Column(String(20), nullable=True)
    collection_in_person_instructions = Column(Text, nullable=True)
    collection_lockbox_instructions = Column(Text, nullable=True)
    collection_lockbox_code = Column(String(100), nullable=True)
    collection_delivery_instructions = Column(Text, nullable=True)

    host_collection_confirmed_at = Column(UTCDateTime, nullable=True)
    renter_collection_confirmed_at = Column(UTCDateTime, nullable=True)
    trip_started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    car = relationship("Car")
    renter = relationship("User")

    def __repr__(self) -> str:
        return f"<Booking {self.id} car={self.car_id} status={self.status}>"
