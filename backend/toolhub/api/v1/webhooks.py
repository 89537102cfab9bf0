"""Stripe webhook endpoint — receives and processes Stripe events."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from toolhub.api.deps import get_stripe_gateway, get_webhook_processor
from toolhub.billing.stripe_client import StripeGateway
from toolhub.billing.webhooks import WebhookProcessor
from toolhub.schemas.billing import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["webhooks"])


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={400: {"content": {"text/plain": {}}, "description": "Bad signature or payload"}},
)
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Receive and process Stripe webhook events."""
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not gateway.webhook_secret or not sig_header:
        logger.error("Webhook secret or signature missing")
        return PlainTextResponse("Webhook Secret or Signature missing", status_code=status.HTTP_400_BAD_REQUEST)

    # 2. Verify signature
    try:
        event = gateway.construct_event(payload, sig_header)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        return PlainTextResponse(f"Webhook Error: {e}", status_code=status.HTTP_400_BAD_REQUEST)

    # 3. Ledger + dispatch
    try:
        result = await processor.process(event)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return WebhookResponse(status=result)
