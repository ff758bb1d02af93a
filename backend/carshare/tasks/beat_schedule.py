# backend/carshare/tasks/beat_schedule.py
"""
Celery Beat schedule.

The scheduler poll is the heartbeat of every time-based transition
(auto-charge, capture, payout release, deposit refund); the stale sweep is
the safety net for lost webhooks.
"""

from datetime import timedelta
from typing import Any

from carshare.core.config import settings

CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    "process-due-scheduled-actions": {
        "task": "carshare.tasks.payment_tasks.process_due_scheduled_actions",
        "schedule": timedelta(minutes=1),
        "options": {"queue": "payments", "expires": 55},
    },
    "reconcile-stale-checkouts": {
        "task": "carshare.tasks.payment_tasks.reconcile_stale_checkouts",
        "schedule": timedelta(minutes=5),
        "kwargs": {
            "limit": settings.stale_checkout_batch_limit,
            "older_than_minutes": settings.stale_checkout_age_minutes,
        },
        "options": {"queue": "payments", "expires": 290},
    },
}


def get_beat_schedule() -> dict[str, dict[str, Any]]:
    return dict(CELERYBEAT_SCHEDULE)
