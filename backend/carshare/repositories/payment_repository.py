"""Repository for payments: lookups by processor ids and stale-checkout candidates."""

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from carshare.models.payment import CaptureStatus, Payment, PaymentStatus
from carshare.repositories.base_repository import BaseRepository

STALE_CANDIDATE_STATUSES = (
    PaymentStatus.METHOD_COLLECTION_PENDING.value,
    PaymentStatus.CHECKOUT_CREATED.value,
)


class PaymentRepository(BaseRepository[Payment]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, Payment)

    def get_by_booking_id(self, booking_id: str) -> Optional[Payment]:
        return self._execute_first(self._build_query().filter(Payment.booking_id == booking_id))

    def get_by_checkout_session_id(self, session_id: str) -> Optional[Payment]:
        return self._execute_first(
            self._build_query().filter(Payment.stripe_checkout_session_id == session_id)
        )

    def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Payment]:
        return self._execute_first(
            self._build_query().filter(Payment.stripe_payment_intent_id == payment_intent_id)
        )

    def get_by_charge_id(self, charge_id: str) -> Optional[Payment]:
        return self._execute_first(self._build_query().filter(Payment.stripe_charge_id == charge_id))

    def list_stale_checkouts(self, *, updated_before: datetime, limit: int) -> List[Payment]:
        """
        Payments stuck waiting on a checkout session, oldest first.

        Authorized manual-capture payments are excluded: they are waiting for
        trip end, not for the renter.
        """
        query = (
            self._build_query()
            .filter(
                Payment.status.in_(STALE_CANDIDATE_STATUSES),
                Payment.updated_at <= updated_before,
                Payment.stripe_checkout_session_id.isnot(None),
                or_(
                    Payment.capture_status.is_(None),
                    Payment.capture_status != CaptureStatus.PENDING_CAPTURE.value,
                ),
            )
            .order_by(Payment.updated_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def list_for_cars(self, car_ids: Sequence[str]) -> List[Payment]:
        if not car_ids:
            return []
        query = (
            self._build_query()
            .filter(Payment.car_id.in_(list(car_ids)))
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )
        return self._execute_query(query)

    def list_by_booking_ids(self, booking_ids: Sequence[str]) -> List[Payment]:
        if not booking_ids:
            return []
        return self._execute_query(
            self._build_query().filter(Payment.booking_id.in_(list(booking_ids)))
        )

    def list_needing_strategy_backfill(self, limit: Optional[int] = None) -> List[Payment]:
        query = (
            self._build_query()
            .filter(
                or_(
                    Payment.payment_strategy.is_(None),
                    Payment.capture_status.is_(None),
                    Payment.deposit_status.is_(None),
                    Payment.payment_due_at.is_(None),
                    Payment.deposit_claim_window_ends_at.is_(None),
                )
            )
            .order_by(Payment.created_at.asc())
        )
        if limit:
            query = query.limit(limit)
        return self._execute_query(query)
