"""Turns verified credit-pack payments into credit batches, at most once each."""

from datetime import UTC, datetime

import structlog

from place_ledger.config import LedgerConfig
from place_ledger.constants import ONE_TIME_PURCHASE_KIND
from place_ledger.models.events import PurchaseSucceeded
from place_ledger.models.ledger import CreditBatch, IngestOutcome, IngestResult
from place_ledger.services.ledger_store import LedgerRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PurchaseIngester:
    """PurchaseEventHandler that creates one CreditBatch per external purchase.

    Webhooks arrive at least once, so a replayed event must find the batch
    created the first time and return IGNORED. LedgerStoreError propagates so
    the webhook responds 5xx and Stripe redelivers.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        config: LedgerConfig,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.config = config
        self.now_provider = now_provider

    def _reject(self, event: PurchaseSucceeded, reason: str) -> IngestResult:
        # Logged with full identifiers for manual reconciliation
        logger.error(
            "purchase_rejected",
            reason=reason,
            event_id=event.event_id,
            external_purchase_id=event.external_purchase_id,
            purchase_kind=event.purchase_kind,
            user_id=event.user_id,
            plan_type=event.plan_type,
            places_count=event.places_count,
            amount=event.amount,
            currency=event.currency,
        )
        return IngestResult(outcome=IngestOutcome.REJECTED, reason=reason)

    async def ingest(self, event: PurchaseSucceeded) -> IngestResult:
        if event.purchase_kind != ONE_TIME_PURCHASE_KIND:
            return self._reject(event, f"unsupported purchase kind: {event.purchase_kind!r}")

        missing = [
            name
            for name in ("user_id", "plan_type", "places_count")
            if not getattr(event, name)
        ]
        if missing or not event.external_purchase_id:
            return self._reject(event, f"missing metadata: {', '.join(missing) or 'external_purchase_id'}")

        plan = self.config.plan_for(event.plan_type)
        if plan is None:
            return self._reject(event, f"unknown plan type: {event.plan_type!r}")
        if event.places_count <= 0:
            return self._reject(event, f"invalid places count: {event.places_count}")

        existing = await self.repository.get_credit_batch_by_purchase_id(
            event.external_purchase_id
        )
        if existing is not None:
            logger.info(
                "purchase_already_ingested",
                external_purchase_id=event.external_purchase_id,
                batch_id=existing.id,
            )
            return IngestResult(outcome=IngestOutcome.IGNORED, batch=existing)

        if event.places_count != plan.places:
            # The paid metadata wins over the current catalog size
            logger.warning(
                "purchase_places_differ_from_catalog",
                plan_type=event.plan_type,
                places_count=event.places_count,
                catalog_places=plan.places,
            )

        batch = CreditBatch(
            user_id=event.user_id,
            credit_type=plan.credit_type,
            purchased=event.places_count,
            consumed=0,
            purchased_at=self.now_provider(),
            active=True,
            external_purchase_id=event.external_purchase_id,
            metadata={
                "payment_intent_id": event.external_purchase_id,
                "amount": event.amount,
                "currency": event.currency,
            },
        )
        created = await self.repository.insert_credit_batch(batch)
        if created is None:
            # Lost a race with a concurrent delivery of the same event
            return IngestResult(
                outcome=IngestOutcome.IGNORED,
                batch=await self.repository.get_credit_batch_by_purchase_id(
                    event.external_purchase_id
                ),
            )

        logger.info(
            "purchase_ingested",
            user_id=created.user_id,
            batch_id=created.id,
            credit_type=created.credit_type,
            places=created.purchased,
        )
        return IngestResult(outcome=IngestOutcome.CREATED, batch=created)
