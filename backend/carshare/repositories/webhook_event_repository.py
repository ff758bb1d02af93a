"""Repository helpers for webhook event ledger."""

from __future__ import annotations

from sqlalchemy.orm import Session

from carshare.models.webhook_event import WebhookEvent
from carshare.repositories.base_repository import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    """Repository for webhook ledger queries."""

    def __init__(self, db: Session) -> None:
        super().__init__(db, WebhookEvent)

    def find_by_source_and_event_id(self, source: str, event_id: str) -> WebhookEvent | None:
        return self._execute_first(
            self._build_query().filter(
                WebhookEvent.source == source,
                WebhookEvent.event_id == event_id,
            )
        )
