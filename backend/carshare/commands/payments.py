#!/usr/bin/env python
# backend/carshare/commands/payments.py
"""
Payment lifecycle management commands.

Usage:
    python -m carshare.commands.payments setup-webhook          # Create/update the Stripe endpoint
    python -m carshare.commands.payments backfill-strategy      # Fill lifecycle fields on old payments
    python -m carshare.commands.payments sweep-stale            # Reconcile stale checkouts now
    python -m carshare.commands.payments run-due                # Execute due scheduled actions now
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from carshare.core.exceptions import DomainException
from carshare.database import get_db_session
from carshare.services.payment_admin_service import PaymentAdminService

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class PaymentsCommand:
    """Payment lifecycle command handler."""

    def setup_webhook(self) -> Dict[str, Any]:
        with get_db_session() as db:
            return PaymentAdminService(db).setup_webhook_endpoint().model_dump()

    def backfill_strategy(self, limit: Optional[int] = None) -> Dict[str, Any]:
        with get_db_session() as db:
            return PaymentAdminService(db).backfill_payment_strategy(limit).model_dump()

    def sweep_stale(
        self,
        limit: Optional[int] = None,
        older_than_minutes: Optional[int] = None,
        async_mode: bool = False,
    ) -> Dict[str, Any]:
        from carshare.tasks import payment_tasks

        if async_mode:
            task = payment_tasks.reconcile_stale_checkouts.delay(limit, older_than_minutes)
            return {"status": "submitted", "task_id": task.id}
        return payment_tasks.run_stale_sweep(limit, older_than_minutes)

    def run_due(self, limit: Optional[int] = None, async_mode: bool = False) -> Dict[str, Any]:
        from carshare.tasks import payment_tasks

        if async_mode:
            task = payment_tasks.process_due_scheduled_actions.delay(limit)
            return {"status": "submitted", "task_id": task.id}
        return dict(payment_tasks.run_due_actions(limit))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Car share payment lifecycle management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m carshare.commands.payments setup-webhook
  python -m carshare.commands.payments backfill-strategy --limit 500
  python -m carshare.commands.payments sweep-stale --older-than 10
  python -m carshare.commands.payments run-due --async
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    subparsers.add_parser("setup-webhook", help="Create or update the Stripe webhook endpoint")

    backfill_parser = subparsers.add_parser(
        "backfill-strategy", help="Fill payment strategy fields on legacy payments"
    )
    backfill_parser.add_argument("--limit", type=int, default=None)

    sweep_parser = subparsers.add_parser("sweep-stale", help="Reconcile stale checkouts")
    sweep_parser.add_argument("--limit", type=int, default=None)
    sweep_parser.add_argument(
        "--older-than", type=int, default=None, dest="older_than", help="Minutes"
    )
    sweep_parser.add_argument(
        "--async", action="store_true", dest="async_mode", help="Run via Celery"
    )

    due_parser = subparsers.add_parser("run-due", help="Execute due scheduled actions")
    due_parser.add_argument("--limit", type=int, default=None)
    due_parser.add_argument(
        "--async", action="store_true", dest="async_mode", help="Run via Celery"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the payments command."""
    args = build_parser().parse_args(argv)
    cmd = PaymentsCommand()

    try:
        if args.command == "setup-webhook":
            result = cmd.setup_webhook()
        elif args.command == "backfill-strategy":
            result = cmd.backfill_strategy(args.limit)
        elif args.command == "sweep-stale":
            result = cmd.sweep_stale(args.limit, args.older_than, args.async_mode)
        else:
            result = cmd.run_due(args.limit, args.async_mode)
    except DomainException as e:
        logger.error(f"{args.command} failed: {e.message}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
