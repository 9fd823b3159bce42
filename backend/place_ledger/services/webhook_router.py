"""Dispatches typed ledger events to the purchase and subscription handlers."""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from place_ledger.models.events import (
    CustomerDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    LedgerEvent,
    PurchaseSucceeded,
    SubscriptionAttached,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from place_ledger.models.ledger import IngestResult, SyncResult

logger = structlog.get_logger(__name__)


class PurchaseEventHandler(Protocol):
    async def ingest(self, event: PurchaseSucceeded) -> IngestResult: ...


class SubscriptionEventHandler(Protocol):
    async def handle_created(self, event: SubscriptionCreated) -> SyncResult: ...

    async def handle_attached(self, event: SubscriptionAttached) -> SyncResult: ...

    async def handle_updated(self, event: SubscriptionUpdated) -> SyncResult: ...

    async def handle_deleted(self, event: SubscriptionDeleted) -> SyncResult: ...

    async def handle_invoice_paid(self, event: InvoicePaid) -> SyncResult: ...

    async def handle_invoice_failed(self, event: InvoicePaymentFailed) -> SyncResult: ...

    async def handle_customer_deleted(self, event: CustomerDeleted) -> SyncResult: ...


class WebhookRouter:
    """Routes each event variant to exactly one handler method."""

    def __init__(
        self,
        subscriptions: SubscriptionEventHandler,
        purchases: PurchaseEventHandler,
    ) -> None:
        self._routes: dict[type, Callable[[Any], Awaitable[IngestResult | SyncResult]]] = {
            SubscriptionCreated: subscriptions.handle_created,
            SubscriptionAttached: subscriptions.handle_attached,
            SubscriptionUpdated: subscriptions.handle_updated,
            SubscriptionDeleted: subscriptions.handle_deleted,
            InvoicePaid: subscriptions.handle_invoice_paid,
            InvoicePaymentFailed: subscriptions.handle_invoice_failed,
            CustomerDeleted: subscriptions.handle_customer_deleted,
            PurchaseSucceeded: purchases.ingest,
        }

    async def dispatch(self, event: LedgerEvent) -> IngestResult | SyncResult:
        handler = self._routes.get(type(event))
        if handler is None:
            raise TypeError(f"No handler registered for {type(event).__name__}")
        result = await handler(event)
        logger.info(
            "ledger_event_dispatched",
            event_id=event.event_id,
            event_kind=event.kind,
            outcome=result.outcome.value,
        )
        return result
