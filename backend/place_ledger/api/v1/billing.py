"""Stripe webhook endpoint feeding the purchase and subscription handlers."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

from place_ledger.services.ledger_store import LedgerStoreError
from place_ledger.services.stripe_service import StripeService
from place_ledger.services.webhook_router import WebhookRouter

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool
    outcome: str | None = None


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe is not configured")
    return service


def _get_webhook_router(request: Request) -> WebhookRouter:
    webhook_router = getattr(request.app.state, "webhook_router", None)
    if webhook_router is None:
        raise HTTPException(status_code=503, detail="Ledger service unavailable")
    return webhook_router


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify a Stripe webhook, translate it, and apply it to the ledger."""
    stripe_service = _get_stripe_service(request)
    webhook_router = _get_webhook_router(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_id = str(event.get("id", ""))
    event_type = str(event.get("type", ""))
    if not event_id:
        raise HTTPException(status_code=400, detail="Stripe event has no id")
    structlog.contextvars.bind_contextvars(event_id=event_id, event_type=event_type)

    try:
        ledger_event = await stripe_service.parse_event(event)
    except ValueError as e:
        # Malformed payloads will not improve on redelivery
        logger.error("stripe_event_invalid", error=str(e))
        return WebhookResponse(received=True, processed=False, outcome="invalid")

    if ledger_event is None:
        return WebhookResponse(received=True, processed=False)

    try:
        result = await webhook_router.dispatch(ledger_event)
    except LedgerStoreError as e:
        logger.error("stripe_webhook_store_error", error=str(e))
        raise HTTPException(status_code=500, detail="Ledger store unavailable")

    return WebhookResponse(received=True, processed=True, outcome=result.outcome.value)
