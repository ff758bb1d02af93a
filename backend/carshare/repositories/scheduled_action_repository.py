"""Repository for durable scheduled actions."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from carshare.models.scheduled_action import ScheduledAction, ScheduledActionStatus
from carshare.repositories.base_repository import BaseRepository


class ScheduledActionRepository(BaseRepository[ScheduledAction]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, ScheduledAction)

    def get_pending_by_dedupe_key(self, dedupe_key: str) -> Optional[ScheduledAction]:
        return self._execute_first(
            self._build_query().filter(
                ScheduledAction.dedupe_key == dedupe_key,
                ScheduledAction.status.in_(
                    (ScheduledActionStatus.PENDING.value, ScheduledActionStatus.RUNNING.value)
                ),
            )
        )

    def claim_due(
        self, now: datetime, limit: int, *, lease_expired_before: datetime
    ) -> List[ScheduledAction]:
        """
        Lock due rows and mark them running.

        Due means ``pending`` with ``run_at`` reached, or ``running`` with a
        claim older than ``lease_expired_before`` (its worker died before
        finishing). ``skip_locked`` lets several workers poll at once without
        taking the same row; SQLite ignores the lock clause.
        """
        query = (
            self._build_query()
            .filter(
                or_(
                    and_(
                        ScheduledAction.status == ScheduledActionStatus.PENDING.value,
                        ScheduledAction.run_at <= now,
                    ),
                    and_(
                        ScheduledAction.status == ScheduledActionStatus.RUNNING.value,
                        ScheduledAction.claimed_at <= lease_expired_before,
                    ),
                )
            )
            .order_by(ScheduledAction.run_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        rows = self._execute_query(query)
        for row in rows:
            row.status = ScheduledActionStatus.RUNNING.value
            row.attempts = (row.attempts or 0) + 1
            row.claimed_at = now
        self.db.flush()
        return rows

    def list_pending_for_payment(self, payment_id: str) -> List[ScheduledAction]:
        return self._execute_query(
            self._build_query().filter(
                ScheduledAction.payment_id == payment_id,
                ScheduledAction.status == ScheduledActionStatus.PENDING.value,
            )
        )
