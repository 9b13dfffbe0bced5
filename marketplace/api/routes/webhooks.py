"""Webhook API routes for external service integrations."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from marketplace.api.deps import Gateway, get_order_reconciler
from marketplace.core.errors import WebhookSignatureError
from marketplace.services.order_reconciler import OrderReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def get_raw_body(request: Request) -> bytes:
    """Raw request bytes; signature verification needs them unparsed."""
    return await request.body()


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives and processes Stripe webhook events. Requires valid signature.",
)
def stripe_webhook(
    request: Request,
    payload: Annotated[bytes, Depends(get_raw_body)],
    gateway: Gateway,
    reconciler: Annotated[OrderReconciler, Depends(get_order_reconciler)],
) -> dict[str, str]:
    """Handle Stripe webhook events.

    Handles:
    - checkout.session.completed: creates the order, items and download tokens
    - checkout.session.async_payment_failed / expired: fails a pending order
    - charge.refunded: marks the order refunded and revokes its tokens

    Duplicate, unrelated and unrecoverable events are acknowledged with 200
    so Stripe stops redelivering them. Transient failures propagate as 5xx
    so Stripe retries.

    Raises:
        WebhookSignatureError: 400 if the signature header is missing or invalid.
        ExternalServiceError: 503 if no webhook secret is configured.
    """
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header in webhook request")
        raise WebhookSignatureError("Missing Stripe-Signature header")

    logger.debug("Received webhook: %d bytes", len(payload))
    event = gateway.construct_event(payload, sig_header)

    event_type = event.get("type", "")
    logger.info("Processing Stripe webhook event: %s (%s)", event_type, event.get("id"))

    outcome = reconciler.handle_event(event)
    logger.info("Webhook event %s handled: %s", event.get("id"), outcome.value)

    return {"status": "received"}
