"""Repository for user accounts."""

from typing import Optional

from sqlalchemy.orm import Session

from carshare.models.user import User
from carshare.repositories.base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, User)

    def get_by_email(self, email: str) -> Optional[User]:
        return self._execute_first(self._build_query().filter(User.email == email.lower()))
