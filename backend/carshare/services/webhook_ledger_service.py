"""Service for recording inbound webhook deliveries."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carshare.core.exceptions import RepositoryException
from carshare.models.webhook_event import WebhookEvent
from carshare.repositories.webhook_event_repository import WebhookEventRepository
from carshare.services.base import BaseService
from carshare.utils.time_utils import Clock

_SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "stripe-signature",
    "x-api-key",
}

TERMINAL_LEDGER_STATUSES = ("processed", "ignored")


class WebhookLedgerService(BaseService):
    """Business logic for webhook ledger entries."""

    def __init__(self, db: Session, now: Optional[Clock] = None) -> None:
        super().__init__(db, now)
        self.repository = WebhookEventRepository(db)

    @BaseService.measure_operation("webhook_ledger.log_received")
    def log_received(
        self,
        *,
        source: str,
        event_type: str,
        payload: dict[str, Any],
        event_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        """
        Log a received webhook before processing.

        A redelivered event id returns the existing row; callers check
        ``is_already_handled`` to short-circuit.
        """
        safe_headers = self._sanitize_headers(headers) if headers else None
        if event_id:
            existing = self.repository.find_by_source_and_event_id(source, event_id)
            if existing is not None:
                return existing

        try:
            return self.repository.create(
                source=source,
                event_type=event_type or "unknown",
                event_id=event_id,
                payload=payload,
                headers=safe_headers,
                status="received",
                received_at=self.now(),
            )
        except RepositoryException as exc:
            # Another worker stored the same delivery first
            if isinstance(exc.__cause__, IntegrityError) and event_id:
                existing = self.repository.find_by_source_and_event_id(source, event_id)
                if existing is not None:
                    return existing
            raise

    @staticmethod
    def is_already_handled(event: WebhookEvent) -> bool:
        return event.status in TERMINAL_LEDGER_STATUSES

    @BaseService.measure_operation("webhook_ledger.mark_processed")
    def mark_processed(
        self,
        event: WebhookEvent,
        *,
        related_payment_id: str | None = None,
        status: str = "processed",
    ) -> WebhookEvent:
        """Mark webhook as handled (``processed`` or ``ignored``)."""
        event.status = status
        event.processing_error = None
        event.processed_at = self.now()
        if related_payment_id:
            event.related_payment_id = related_payment_id
        self.repository.flush()
        return event

    @BaseService.measure_operation("webhook_ledger.mark_failed")
    def mark_failed(self, event: WebhookEvent, *, error: str) -> WebhookEvent:
        """Mark webhook as failed; a redelivery will process it again."""
        event.status = "failed"
        event.processing_error = error
        event.processed_at = self.now()
        self.repository.flush()
        return event

    @staticmethod
    def _sanitize_headers(headers: dict[str, Any]) -> dict[str, Any]:
        return {
            key: ("[redacted]" if key.lower() in _SENSITIVE_HEADERS else value)
            for key, value in headers.items()
        }
