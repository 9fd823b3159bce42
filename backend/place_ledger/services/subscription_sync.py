"""Applies Stripe subscription lifecycle events to the per-user subscription row."""

from datetime import UTC, datetime

import structlog

from place_ledger.models.events import (
    CustomerDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionAttached,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
)
from place_ledger.models.ledger import (
    SubscriptionRecord,
    SubscriptionStatus,
    SyncOutcome,
    SyncResult,
)
from place_ledger.services.ledger_store import LedgerRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _apply_snapshot(
    record: SubscriptionRecord,
    snapshot: SubscriptionSnapshot,
    *,
    status: SubscriptionStatus | None = None,
    include_cancellation: bool = True,
) -> SubscriptionRecord:
    record.external_customer_id = snapshot.customer_id or record.external_customer_id
    record.external_subscription_id = snapshot.subscription_id
    record.price_id = snapshot.price_id
    record.status = status or snapshot.status
    record.trial_start = snapshot.trial_start
    record.trial_end = snapshot.trial_end
    record.current_period_start = snapshot.current_period_start
    record.current_period_end = snapshot.current_period_end
    if include_cancellation:
        record.cancel_at_period_end = snapshot.cancel_at_period_end
        record.canceled_at = snapshot.canceled_at
    return record


class SubscriptionSynchronizer:
    """SubscriptionEventHandler backed by a LedgerRepository.

    Every handler except ``created`` looks the row up by a Stripe id and
    drops the event when it is missing: under out-of-order delivery the
    creating event may still be on its way, and Stripe's retry of the
    dropped event will succeed once it lands. All writes are whole-field
    overwrites, so replays are harmless.
    """

    def __init__(self, repository: LedgerRepository, now_provider=_utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider

    def _dropped(self, event_kind: str, event_id: str, **lookup: str) -> SyncResult:
        logger.info("subscription_event_dropped", event_kind=event_kind, event_id=event_id, **lookup)
        return SyncResult(outcome=SyncOutcome.DROPPED, reason="subscription record not found")

    async def _save(self, event_kind: str, record: SubscriptionRecord) -> SyncResult:
        record.updated_at = self.now_provider()
        stored = await self.repository.upsert_subscription(record)
        logger.info(
            "subscription_synced",
            event_kind=event_kind,
            user_id=stored.user_id,
            status=stored.status.value,
            is_premium=stored.is_premium,
        )
        return SyncResult(outcome=SyncOutcome.APPLIED, record=stored)

    async def handle_created(self, event: SubscriptionCreated) -> SyncResult:
        record = await self.repository.get_subscription(event.user_id)
        if record is None:
            record = SubscriptionRecord(user_id=event.user_id)
        return await self._save(event.kind, _apply_snapshot(record, event.snapshot))

    async def handle_attached(self, event: SubscriptionAttached) -> SyncResult:
        record = await self.repository.get_subscription_by_customer_id(event.snapshot.customer_id)
        if record is None:
            return self._dropped(event.kind, event.event_id, customer_id=event.snapshot.customer_id)
        return await self._save(
            event.kind, _apply_snapshot(record, event.snapshot, include_cancellation=False)
        )

    async def handle_updated(self, event: SubscriptionUpdated) -> SyncResult:
        record = await self.repository.get_subscription_by_external_id(event.snapshot.subscription_id)
        if record is None:
            return self._dropped(
                event.kind, event.event_id, subscription_id=event.snapshot.subscription_id
            )
        return await self._save(event.kind, _apply_snapshot(record, event.snapshot))

    async def handle_deleted(self, event: SubscriptionDeleted) -> SyncResult:
        record = await self.repository.get_subscription_by_external_id(event.subscription_id)
        if record is None:
            return self._dropped(event.kind, event.event_id, subscription_id=event.subscription_id)

        record.status = SubscriptionStatus.CANCELED
        record.canceled_at = event.canceled_at or self.now_provider()
        # A deleted subscription can no longer be matched by late update events
        record.external_subscription_id = None
        return await self._save(event.kind, record)

    async def handle_invoice_paid(self, event: InvoicePaid) -> SyncResult:
        record = await self.repository.get_subscription_by_external_id(event.snapshot.subscription_id)
        if record is None:
            return self._dropped(
                event.kind, event.event_id, subscription_id=event.snapshot.subscription_id
            )
        return await self._save(
            event.kind,
            _apply_snapshot(
                record,
                event.snapshot,
                status=SubscriptionStatus.ACTIVE,
                include_cancellation=False,
            ),
        )

    async def handle_invoice_failed(self, event: InvoicePaymentFailed) -> SyncResult:
        record = await self.repository.get_subscription_by_external_id(event.snapshot.subscription_id)
        if record is None:
            return self._dropped(
                event.kind, event.event_id, subscription_id=event.snapshot.subscription_id
            )
        return await self._save(
            event.kind, _apply_snapshot(record, event.snapshot, include_cancellation=False)
        )

    async def handle_customer_deleted(self, event: CustomerDeleted) -> SyncResult:
        record = await self.repository.get_subscription_by_customer_id(event.customer_id)
        if record is None:
            return self._dropped(event.kind, event.event_id, customer_id=event.customer_id)
        record.external_customer_id = None
        return await self._save(event.kind, record)
