# backend/carshare/routes/v1/payments.py
"""
Payment reconciliation routes - API v1

Endpoints:
    POST /checkout/reconcile - Confirm a checkout the renter returned from
    POST /reconcile-stale - Sweep checkouts left pending (support only)
"""

import asyncio
from datetime import timedelta
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends

from ...api.dependencies import (
    get_current_user,
    get_reconciliation_service,
    require_support_user,
)
from ...core.exceptions import DomainException
from ...models.user import User
from ...schemas.payment_schemas import (
    CheckoutReconcileResult,
    ReconcileCheckoutRequest,
    ReconcileStaleRequest,
    StaleSweepResult,
)
from ...services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments-v1"])


@router.post("/checkout/reconcile", response_model=CheckoutReconcileResult)
async def reconcile_checkout(
    payload: ReconcileCheckoutRequest = Body(...),
    current_user: User = Depends(get_current_user),
    reconciliation_service: ReconciliationService = Depends(get_reconciliation_service),
) -> CheckoutReconcileResult:
    """Apply the Checkout Session's current state without waiting for the webhook."""
    try:
        return await asyncio.to_thread(
            reconciliation_service.reconcile_checkout_redirect, payload.session_id, current_user
        )
    except DomainException as e:
        raise e.to_http_exception()


@router.post("/reconcile-stale", response_model=StaleSweepResult)
async def reconcile_stale_checkouts(
    payload: Optional[ReconcileStaleRequest] = Body(default=None),
    _support_user: User = Depends(require_support_user),
    reconciliation_service: ReconciliationService = Depends(get_reconciliation_service),
) -> StaleSweepResult:
    request = payload or ReconcileStaleRequest()
    older_than = (
        timedelta(minutes=request.older_than_minutes)
        if request.older_than_minutes is not None
        else None
    )
    try:
        return await asyncio.to_thread(
            reconciliation_service.reconcile_stale_checkouts,
            limit=request.limit,
            older_than=older_than,
        )
    except DomainException as e:
        raise e.to_http_exception()
