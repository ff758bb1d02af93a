# backend/carshare/services/overlap_guard.py
"""
Overlap Guard

Enforces the no-double-booking rule: for one car, no two bookings that
hold dates (``payment_pending`` or ``confirmed``) may have intersecting
inclusive [start, end] ranges.

The check runs at intake and again when a payment method is confirmed or a
payment activates a booking, because a competing booking may have been
confirmed in between.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import BookingConflictException
from ..models.booking import Booking
from ..repositories import RepositoryFactory
from ..utils.time_utils import Clock
from .base import BaseService


class OverlapGuard(BaseService):
    def __init__(self, db: Session, now: Optional[Clock] = None):
        super().__init__(db, now)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    def find_conflicts(
        self,
        car_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        return self.booking_repository.find_blocking_overlaps(
            car_id, start, end, exclude_booking_id=exclude_booking_id
        )

    def assert_bookable(
        self,
        car_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        """
        Raise ``BookingConflictException`` when the range is already held.

        Raises:
            BookingConflictException: another blocking booking intersects the range
        """
        conflicts = self.find_conflicts(car_id, start, end, exclude_booking_id=exclude_booking_id)
        if conflicts:
            self.logger.info(
                f"Car {car_id} already held for {start.isoformat()} - {end.isoformat()} "
                f"by booking {conflicts[0].id}"
            )
            raise BookingConflictException(
                details={"conflicting_booking_ids": [booking.id for booking in conflicts]}
            )
