"""
Stripe Webhook API Endpoint
Handles incoming webhook events from Stripe
"""

from fastapi import APIRouter, Request, HTTPException, Depends
from fastapi.responses import JSONResponse
import logging

from turbomerch.services.stripe_webhook import StripeWebhookHandler, get_webhook_handler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["stripe"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    webhook_handler: StripeWebhookHandler = Depends(get_webhook_handler)
) -> JSONResponse:
    """
    Handle Stripe webhook events

    Subscription and invoice events update the user's tier, account status
    and billing anchor.
    """
    payload = await request.body()
    sig_header = request.headers.get('stripe-signature')

    if not sig_header:
        logger.error("Missing Stripe signature header")
        raise HTTPException(status_code=400, detail="Missing signature")

    # Verify webhook signature and construct event
    event = webhook_handler.verify_webhook_signature(payload, sig_header)

    result = await webhook_handler.handle_event(event)
    logger.info(f"Webhook processed: {event['type']} - {result['status']}")

    return JSONResponse(
        status_code=200,
        content={
            "received": True,
            "event_type": event['type'],
            "event_id": event['id'],
            "result": result
        }
    )
