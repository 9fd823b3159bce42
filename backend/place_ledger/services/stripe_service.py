"""Stripe API wrapper: webhook verification and event translation."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from place_ledger.config import StripeConfig
from place_ledger.constants import ONE_TIME_PURCHASE_KIND
from place_ledger.models.events import (
    CustomerDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    LedgerEvent,
    PurchaseSucceeded,
    SubscriptionAttached,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
)
from place_ledger.models.ledger import SubscriptionStatus

logger = structlog.get_logger(__name__)


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _to_dict(obj: dict | Any) -> dict:
    return obj if isinstance(obj, dict) else obj.to_dict()


def _parse_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _invoice_subscription_id(invoice: dict) -> str | None:
    # Older API versions expose `subscription` on the invoice, newer ones nest it under `parent`
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = details.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    return str(subscription_id) if subscription_id else None


class StripeService:
    """Encapsulates the Stripe SDK calls the ledger webhooks need."""

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _to_dict(event)

    async def fetch_subscription_snapshot(self, subscription_id: str) -> SubscriptionSnapshot:
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        return self.subscription_snapshot_from_object(subscription)

    def subscription_snapshot_from_object(self, subscription_obj: dict | Any) -> SubscriptionSnapshot:
        subscription = _to_dict(subscription_obj)

        subscription_id = subscription.get("id")
        if not subscription_id:
            raise ValueError("Stripe subscription is missing id")

        raw_status = str(subscription.get("status") or "")
        try:
            status = SubscriptionStatus(raw_status)
        except ValueError as e:
            raise ValueError(f"Unknown Stripe subscription status '{raw_status}'") from e

        items = (subscription.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price_id = (first_item.get("price") or {}).get("id")

        # Period bounds moved onto subscription items in newer API versions
        period_start = first_item.get("current_period_start") or subscription.get("current_period_start")
        period_end = first_item.get("current_period_end") or subscription.get("current_period_end")

        return SubscriptionSnapshot(
            subscription_id=str(subscription_id),
            customer_id=str(subscription.get("customer") or ""),
            status=status,
            price_id=str(price_id) if price_id else None,
            trial_start=_to_datetime(subscription.get("trial_start")),
            trial_end=_to_datetime(subscription.get("trial_end")),
            current_period_start=_to_datetime(period_start),
            current_period_end=_to_datetime(period_end),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            canceled_at=_to_datetime(subscription.get("canceled_at")),
        )

    async def parse_event(self, event: dict) -> LedgerEvent | None:
        """
        Translate a verified Stripe event into a typed ledger event.

        Returns None for events the ledger does not act on (unhandled types,
        one-time checkouts, checkouts or invoices without a subscription).

        Raises:
            ValueError: if a subscription payload cannot be normalized.
        """
        event_id = str(event.get("id", ""))
        event_type = str(event.get("type", ""))
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type == "checkout.session.completed":
            if metadata.get("type") == ONE_TIME_PURCHASE_KIND:
                # Credits are granted on payment_intent.succeeded
                return None
            subscription_id = obj.get("subscription")
            user_id = metadata.get("user_id") or obj.get("client_reference_id")
            if not subscription_id or not user_id:
                logger.warning(
                    "stripe_checkout_missing_metadata",
                    event_id=event_id,
                    has_user_id=bool(user_id),
                    has_subscription_id=bool(subscription_id),
                )
                return None
            snapshot = await self.fetch_subscription_snapshot(str(subscription_id))
            return SubscriptionCreated(event_id=event_id, user_id=str(user_id), snapshot=snapshot)

        if event_type == "customer.subscription.created":
            return SubscriptionAttached(
                event_id=event_id, snapshot=self.subscription_snapshot_from_object(obj)
            )

        if event_type == "customer.subscription.updated":
            return SubscriptionUpdated(
                event_id=event_id, snapshot=self.subscription_snapshot_from_object(obj)
            )

        if event_type == "customer.subscription.deleted":
            return SubscriptionDeleted(
                event_id=event_id,
                subscription_id=str(obj.get("id", "")),
                canceled_at=_to_datetime(obj.get("canceled_at")),
            )

        if event_type in {"invoice.payment_succeeded", "invoice.payment_failed"}:
            subscription_id = _invoice_subscription_id(obj)
            if not subscription_id:
                logger.info("stripe_invoice_without_subscription", event_id=event_id)
                return None
            snapshot = await self.fetch_subscription_snapshot(subscription_id)
            if event_type == "invoice.payment_succeeded":
                return InvoicePaid(event_id=event_id, snapshot=snapshot)
            return InvoicePaymentFailed(event_id=event_id, snapshot=snapshot)

        if event_type == "customer.deleted":
            return CustomerDeleted(event_id=event_id, customer_id=str(obj.get("id", "")))

        if event_type == "payment_intent.succeeded":
            return PurchaseSucceeded(
                event_id=event_id,
                external_purchase_id=str(obj.get("id", "")),
                purchase_kind=metadata.get("type"),
                user_id=metadata.get("user_id"),
                plan_type=metadata.get("plan_type"),
                places_count=_parse_int(metadata.get("places_count")),
                amount=_parse_int(obj.get("amount")),
                currency=metadata.get("currency") or obj.get("currency"),
            )

        logger.info("stripe_event_unhandled", event_id=event_id, event_type=event_type)
        return None
