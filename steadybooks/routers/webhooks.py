"""
Stripe webhook router.

Returns 400 for deliveries that fail verification (Stripe will not fix them by
retrying) and 500 when local storage is unavailable, so Stripe redelivers.
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request, status

from steadybooks.connectors.webhook_handler import MalformedWebhookError, WebhookVerificationError
from steadybooks.dependencies import Services, get_services
from steadybooks.storage.base import StorageError
from steadybooks.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    """Verify and apply a Stripe webhook delivery."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = services.verifier.verify(payload, signature)
    except (WebhookVerificationError, MalformedWebhookError) as e:
        logger.warning("stripe_webhook_rejected", error_type=type(e).__name__, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("stripe_webhook_received", event_id=event.id, event_type=event.type)

    try:
        outcome = await services.reconciler.handle(event)
    except (StorageError, asyncio.TimeoutError) as e:
        logger.error("stripe_webhook_storage_failed", event_id=event.id, error=str(e) or type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook could not be processed",
        )

    return {"received": True, "outcome": outcome.value}
