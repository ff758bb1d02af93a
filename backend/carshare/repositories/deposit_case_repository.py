"""Repository for deposit dispute cases."""

from typing import List, Optional, Set

from sqlalchemy.orm import Session

from carshare.models.deposit_case import ACTIVE_DEPOSIT_CASE_STATUSES, DepositCase
from carshare.repositories.base_repository import BaseRepository


class DepositCaseRepository(BaseRepository[DepositCase]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, DepositCase)

    def list_active_for_payment(self, payment_id: str) -> List[DepositCase]:
        query = (
            self._build_query()
            .filter(
                DepositCase.payment_id == payment_id,
                DepositCase.status.in_(ACTIVE_DEPOSIT_CASE_STATUSES),
            )
            .order_by(DepositCase.created_at.desc())
        )
        return self._execute_query(query)

    def list_active_payment_ids_for_host(self, host_id: str) -> Set[str]:
        query = self.db.query(DepositCase.payment_id).filter(
            DepositCase.host_id == host_id,
            DepositCase.status.in_(ACTIVE_DEPOSIT_CASE_STATUSES),
        )
        return {row[0] for row in self._execute_query(query)}
