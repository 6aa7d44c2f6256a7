"""
Stripe webhook route: POST /api/stripe/webhook

The signature is verified before the payload is trusted. Only
checkout.session.completed is processed; other event types are acknowledged.
"""

import logging
import os

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from marketpay.services.container import Services, get_services
from marketpay.services.stripe_client import WebhookSignatureError, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter()

CHECKOUT_COMPLETED = "checkout.session.completed"


def _is_test_event(event: dict, session: dict) -> bool:
    if event.get("livemode") is False:
        return True
    return str(session.get("id") or "").startswith("cs_test_")


@router.post("/api/stripe/webhook")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    """
    Receive Stripe events.

    Returns 400 for unauthenticated payloads and 500 when the order could not
    be written, so Stripe redelivers the event.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")

    try:
        event = verify_webhook_signature(payload, signature, secret)
    except WebhookSignatureError as e:
        logger.warning("Rejected webhook: %s", e)
        return JSONResponse(status_code=400, content={"detail": f"Invalid signature: {e}"})

    event_type = event.get("type")
    logger.info("Webhook received (id=%s, type=%s)", event.get("id"), event_type)

    if event_type != CHECKOUT_COMPLETED:
        return {"received": True, "ignored": event_type}

    session = (event.get("data") or {}).get("object") or {}
    try:
        order = await services.webhook.handle_checkout_completed(
            session, is_test=_is_test_event(event, session)
        )
    except Exception:
        logger.exception("Checkout session handling failed (session=%s)", session.get("id"))
        return JSONResponse(status_code=500, content={"detail": "Order update failed"})

    return {"received": True, "order_id": order.id}
