# backend/carshare/services/scheduler_service.py
"""
Durable Scheduler

"Run this action at time T" backed by the ``scheduled_actions`` table, so
captures, payout releases and deposit refunds scheduled days ahead survive
worker restarts. A Celery beat entry polls ``process_due`` every minute.

Scheduling only flushes: the caller's transaction decides whether the row
exists, so a rolled back transition never leaves an orphaned action behind.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import PaymentProcessorException
from ..models.scheduled_action import ScheduledAction, ScheduledActionStatus, ScheduledActionType
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..utils.time_utils import Clock
from .base import BaseService

ActionExecutor = Callable[[ScheduledAction], Any]


class SchedulerService(BaseService):
    def __init__(self, db: Session, now: Optional[Clock] = None):
        super().__init__(db, now)
        self.repository = RepositoryFactory.create_scheduled_action_repository(db)

    def schedule(
        self,
        action: ScheduledActionType,
        run_at: datetime,
        *,
        payment_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
    ) -> ScheduledAction:
        """
        Persist an action to run at ``run_at``.

        A pending or running row with the same ``dedupe_key`` is returned
        unchanged instead of creating a second one. A running row whose
        worker died is claimed again by ``process_due``, so it still runs.
        """
        if dedupe_key:
            existing = self.repository.get_pending_by_dedupe_key(dedupe_key)
            if existing is not None:
                self.logger.info(f"Action {action.value} already scheduled under {dedupe_key}")
                return existing

        body = dict(payload or {})
        if payment_id:
            body.setdefault("payment_id", payment_id)
        scheduled = self.repository.create(
            action=action.value,
            payload=body,
            run_at=run_at,
            status=ScheduledActionStatus.PENDING.value,
            attempts=0,
            dedupe_key=dedupe_key,
            payment_id=payment_id,
        )
        self.logger.info(
            f"Scheduled {action.value} for payment {payment_id} at {run_at.isoformat()}"
        )
        return scheduled

    def cancel_pending_for_payment(
        self,
        payment_id: str,
        *,
        actions: Optional[Iterable[ScheduledActionType]] = None,
    ) -> int:
        """Cancel pending rows for a payment, optionally only some action types."""
        wanted = {action.value for action in actions} if actions is not None else None
        cancelled = 0
        for row in self.repository.list_pending_for_payment(payment_id):
            if wanted is not None and row.action not in wanted:
                continue
            row.status = ScheduledActionStatus.CANCELLED.value
            cancelled += 1
        if cancelled:
            self.repository.flush()
            self.logger.info(f"Cancelled {cancelled} pending action(s) for payment {payment_id}")
        return cancelled

    @BaseService.measure_operation("process_due_scheduled_actions")
    def process_due(
        self, executor: ActionExecutor, *, limit: Optional[int] = None
    ) -> Dict[str, int]:
        """
        Claim due rows and run each through ``executor``.

        Transient processor failures put the row back to ``pending`` with a
        later ``run_at`` until ``scheduler_max_attempts`` is reached. Rows
        left ``running`` past the claim lease are claimed again.
        """
        batch = limit or settings.scheduler_batch_size
        now = self.now()
        lease_expired_before = now - timedelta(seconds=settings.scheduler_claim_lease_seconds)
        with self.transaction():
            claimed = self.repository.claim_due(
                now, batch, lease_expired_before=lease_expired_before
            )

        counts = {"claimed": len(claimed), "completed": 0, "retried": 0, "failed": 0}
        for row in claimed:
            outcome = self._run_one(row, executor)
            counts[outcome] += 1
            prometheus_metrics.record_scheduled_action(row.action, outcome)

        if claimed:
            self.logger.info(
                f"Scheduler run: {counts['completed']} completed, {counts['retried']} retried, "
                f"{counts['failed']} failed"
            )
        return counts

    def _run_one(self, row: ScheduledAction, executor: ActionExecutor) -> str:
        action_id = row.id
        if row.attempts > settings.scheduler_max_attempts:
            message = f"Claim lease expired after {row.attempts - 1} attempt(s)"
            self.logger.error(f"Scheduled action {row.action} ({action_id}) abandoned: {message}")
            self._finish(row, ScheduledActionStatus.FAILED, error=message)
            return "failed"
        try:
            executor(row)
        except PaymentProcessorException as exc:
            self.db.rollback()
            if exc.transient and row.attempts < settings.scheduler_max_attempts:
                retry_at = self.now() + timedelta(seconds=settings.scheduler_retry_delay_seconds)
                self.logger.warning(
                    f"Transient failure in {row.action} ({action_id}), "
                    f"attempt {row.attempts}; retrying at {retry_at.isoformat()}"
                )
                self._finish(row, ScheduledActionStatus.PENDING, error=exc.message, run_at=retry_at)
                return "retried"
            self.logger.error(f"Scheduled action {row.action} ({action_id}) failed: {exc.message}")
            self._finish(row, ScheduledActionStatus.FAILED, error=exc.message)
            return "failed"
        except Exception as exc:
            self.db.rollback()
            self.logger.error(
                f"Scheduled action {row.action} ({action_id}) raised {type(exc).__name__}: {exc}"
            )
            self._finish(row, ScheduledActionStatus.FAILED, error=str(exc))
            return "failed"

        self._finish(row, ScheduledActionStatus.COMPLETED)
        return "completed"

    def _finish(
        self,
        row: ScheduledAction,
        status: ScheduledActionStatus,
        *,
        error: Optional[str] = None,
        run_at: Optional[datetime] = None,
    ) -> None:
        with self.transaction():
            row.status = status.value
            row.last_error = error
            if run_at is not None:
                row.run_at = run_at
