"""Repository for host payout profiles."""

from typing import Optional

from sqlalchemy.orm import Session

from carshare.models.host import Host
from carshare.repositories.base_repository import BaseRepository


class HostRepository(BaseRepository[Host]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, Host)

    def get_by_user_id(self, user_id: str) -> Optional[Host]:
        return self._execute_first(self._build_query().filter(Host.user_id == user_id))

    def get_by_connect_account_id(self, account_id: str) -> Optional[Host]:
        return self._execute_first(
            self._build_query().filter(Host.stripe_connect_account_id == account_id)
        )
