"""
Celery tasks for the payment lifecycle.

Both tasks open their own session and delegate to the services; all state
changes and retries live in the database, not in Celery.
"""

from datetime import timedelta
import logging
from typing import Any, Dict, Optional

from carshare.database import get_db_session
from carshare.services.reconciliation_service import ReconciliationService
from carshare.services.scheduled_transition_service import ScheduledTransitionService
from carshare.services.scheduler_service import SchedulerService
from carshare.tasks.celery_app import typed_task

logger = logging.getLogger(__name__)


def run_due_actions(limit: Optional[int] = None) -> Dict[str, int]:
    with get_db_session() as db:
        scheduler = SchedulerService(db)
        engine = ScheduledTransitionService(db, scheduler=scheduler)
        return scheduler.process_due(engine.execute, limit=limit)


def run_stale_sweep(
    limit: Optional[int] = None, older_than_minutes: Optional[int] = None
) -> Dict[str, Any]:
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    with get_db_session() as db:
        sweep = ReconciliationService(db).reconcile_stale_checkouts(
            limit=limit, older_than=older_than
        )
        return sweep.model_dump()


@typed_task(name="carshare.tasks.payment_tasks.process_due_scheduled_actions")
def process_due_scheduled_actions(limit: Optional[int] = None) -> Dict[str, int]:
    """
    Claim and execute scheduled actions whose ``run_at`` has passed.

    Runs every minute from beat.
    """
    counts = run_due_actions(limit)
    if counts["claimed"]:
        logger.info(f"process_due_scheduled_actions: {counts}")
    return counts


@typed_task(name="carshare.tasks.payment_tasks.reconcile_stale_checkouts")
def reconcile_stale_checkouts(
    limit: Optional[int] = None, older_than_minutes: Optional[int] = None
) -> Dict[str, Any]:
    """Re-fetch checkouts that never received their webhook."""
    return run_stale_sweep(limit, older_than_minutes)
