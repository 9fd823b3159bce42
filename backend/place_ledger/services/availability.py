"""Read-only capacity summary and the shared oldest-first allocation rule."""

from collections.abc import Sequence

import structlog

from place_ledger.config import LedgerConfig
from place_ledger.constants import FREE_SOURCE_LABEL, SUBSCRIPTION_SOURCE_LABEL
from place_ledger.models.ledger import (
    AvailabilitySummary,
    CreditBatch,
    QuotaSource,
    SubscriptionRecord,
    SubscriptionStatus,
)
from place_ledger.services.ledger_store import LedgerRepository

logger = structlog.get_logger(__name__)


def allocate_fifo(
    base_allowance: int,
    batches: Sequence[CreditBatch],
    used_places: int,
) -> tuple[int, list[int]]:
    """
    Split ``used_places`` across the free allowance and active batches.

    The free allowance absorbs usage first, then batches oldest-first, each
    up to its purchased size. Batches after the last one touched get 0.

    Args:
        base_allowance: Free places every account gets.
        batches: Active batches ordered by purchased_at ascending.
        used_places: Lifetime usage counter.

    Returns:
        (free_used, per-batch used counts aligned with ``batches``)
    """
    free_used = min(used_places, base_allowance)
    leftover = used_places - base_allowance
    per_batch: list[int] = []
    for batch in batches:
        used = max(0, min(leftover, batch.purchased))
        per_batch.append(used)
        leftover -= used
    return free_used, per_batch


class AvailabilityCalculator:
    """Turns stored ledger state into a display summary. Never used to gate a consume."""

    def __init__(self, repository: LedgerRepository, config: LedgerConfig) -> None:
        self.repository = repository
        self.config = config

    def _batch_label(self, batch: CreditBatch) -> str:
        for plan in self.config.purchase_plans.values():
            if plan.credit_type == batch.credit_type:
                return f"{plan.label} ({batch.purchased} places)"
        return f"Credit pack ({batch.purchased} places)"

    def summarize(
        self,
        user_id: str,
        *,
        subscription: SubscriptionRecord | None,
        batches: Sequence[CreditBatch],
        used_places: int,
    ) -> AvailabilitySummary:
        """Pure part of get_availability, usable on already-loaded state."""
        base = self.config.base_allowance
        status = subscription.status if subscription else SubscriptionStatus.NONE
        active = [b for b in batches if b.active]
        purchased_total = sum(b.purchased for b in active)
        consumed_total = sum(b.consumed for b in active)

        if subscription is not None and subscription.is_premium:
            return AvailabilitySummary(
                user_id=user_id,
                plan="premium",
                subscription_status=status,
                base_allowance=base,
                total_limit=None,
                used_places=used_places,
                remaining_places=None,
                purchased_total=purchased_total,
                consumed_total=consumed_total,
                sources=[
                    QuotaSource(
                        type="subscription",
                        label=SUBSCRIPTION_SOURCE_LABEL,
                        limit=None,
                        used=used_places,
                    )
                ],
            )

        total_limit = base + purchased_total
        free_used = min(used_places, base)
        # Units absorbed by deactivated batches stay counted in used_places
        retired = sum(b.consumed for b in batches if not b.active)
        _, derived = allocate_fifo(base, active, used_places - retired)

        # `consumed` is written by CreditConsumer; the FIFO derivation only cross-checks it.
        if [b.consumed for b in active] != derived:
            logger.warning(
                "ledger_allocation_drift",
                user_id=user_id,
                used_places=used_places,
                consumed=[b.consumed for b in active],
                derived=derived,
            )

        sources = [QuotaSource(type="free", label=FREE_SOURCE_LABEL, limit=base, used=free_used)]
        sources.extend(
            QuotaSource(
                type=batch.credit_type,
                label=self._batch_label(batch),
                limit=batch.purchased,
                used=batch.consumed,
                batch_id=batch.id,
                purchased_at=batch.purchased_at,
            )
            for batch in active
        )

        return AvailabilitySummary(
            user_id=user_id,
            plan="free",
            subscription_status=status,
            base_allowance=base,
            total_limit=total_limit,
            used_places=used_places,
            remaining_places=max(total_limit - used_places, 0),
            purchased_total=purchased_total,
            consumed_total=consumed_total,
            sources=sources,
        )

    async def get_availability(self, user_id: str) -> AvailabilitySummary:
        subscription = await self.repository.get_subscription(user_id)
        batches = await self.repository.list_credit_batches(user_id, active_only=False)
        used_places = await self.repository.get_used_places(user_id)
        return self.summarize(
            user_id,
            subscription=subscription,
            batches=batches,
            used_places=used_places,
        )
