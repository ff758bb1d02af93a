"""Repository for car listings."""

from typing import List

from sqlalchemy.orm import Session

from carshare.models.car import Car
from carshare.repositories.base_repository import BaseRepository


class CarRepository(BaseRepository[Car]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, Car)

    def list_ids_for_host(self, host_id: str) -> List[str]:
        rows = self._execute_query(self.db.query(Car.id).filter(Car.host_id == host_id))
        return [row[0] for row in rows]
