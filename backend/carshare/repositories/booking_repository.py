"""Repository for bookings, including the overlap query behind double-booking checks."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from carshare.models.booking import BLOCKING_BOOKING_STATUSES, Booking
from carshare.repositories.base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, Booking)

    def find_blocking_overlaps(
        self,
        car_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """
        Bookings for ``car_id`` that hold dates intersecting [start, end].

        Both ends are inclusive: a trip ending at 10:00 conflicts with one
        starting at 10:00.
        """
        query = self._build_query().filter(
            Booking.car_id == car_id,
            Booking.status.in_(BLOCKING_BOOKING_STATUSES),
            Booking.start_date <= end,
            Booking.end_date >= start,
        )
        if exclude_booking_id:
            query = query.filter(Booking.id != exclude_booking_id)
        return self._execute_query(query)

    def list_for_renter(self, renter_id: str) -> List[Booking]:
        query = (
            self._build_query()
            .filter(Booking.renter_id == renter_id)
            .order_by(Booking.created_at.desc(), Booking.id.desc())
        )
        return self._execute_query(query)
