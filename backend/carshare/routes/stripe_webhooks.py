"""
Stripe Webhook Endpoint

Verifies the ``Stripe-Signature`` header, then hands the parsed event to
``StripeEventService``. A handler failure returns 500 so Stripe redelivers;
the webhook ledger makes the redelivery safe.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request

from ..api.dependencies import get_stripe_event_service
from ..core.exceptions import DomainException
from ..schemas.payment_schemas import WebhookResponse
from ..services.stripe_event_service import StripeEventService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["stripe-webhooks"])


@router.post("", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    event_service: StripeEventService = Depends(get_stripe_event_service),
) -> WebhookResponse:
    """
    Handle a Stripe webhook delivery.

    Raises:
        HTTPException: 400 on a missing or invalid signature
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = event_service.stripe_service.construct_webhook_event(payload, signature)
        return await asyncio.to_thread(
            event_service.handle_event, event, headers=dict(request.headers)
        )
    except DomainException as e:
        raise e.to_http_exception()
