# backend/carshare/models/car.py
"""Car listings published by hosts."""

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from .types import Base, TimestampMixin, UTCDateTime, new_ulid


class Car(TimestampMixin, Base):
    """
    A rentable car.

    ``available_from``/``available_until`` bound the window renters may book;
    either side may be open. Collection instructions are copied onto each
    booking at intake so later listing edits do not rewrite past trips.
    """

    __tablename__ = "cars"

    id = Column(String(26), primary_key=True, default=new_ulid)
    host_id = Column(String(26), ForeignKey("hosts.id"), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    make = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    year = Column(Integer, nullable=True)

    price_per_day = Column(Numeric(10, 2), nullable=False)
    deposit_amount = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    available_from = Column(UTCDateTime, nullable=True)
    available_until = Column(UTCDateTime, nullable=True)

    collection_methods = Column(JSON, nullable=True)
    collection_in_person_instructions = Column(Text, nullable=True)
    collection_lockbox_instructions = Column(Text, nullable=True)
    collection_lockbox_code = Column(String(100), nullable=True)
    collection_delivery_instructions = Column(Text, nullable=True)

    host = relationship("Host", back_populates="cars")

    def __repr__(self) -> str:
        return f"<Car {self.id} {self.title!r}>"
