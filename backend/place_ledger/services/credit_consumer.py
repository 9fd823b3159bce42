"""The only code path that spends or hands back place capacity."""

from datetime import UTC, datetime

import structlog

from place_ledger.config import LedgerConfig
from place_ledger.models.ledger import (
    ConsumeOutcome,
    ConsumeResult,
    Reservation,
    UnitMovement,
)
from place_ledger.services.ledger_store import (
    LedgerConsistencyError,
    LedgerRepository,
    LedgerStoreError,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CreditConsumer:
    """Spends one unit per registered place, draining batches oldest-first.

    The guarded increment and the batch update happen inside
    ``LedgerRepository.consume_unit`` as one atomic step; this class turns
    its outcome (or failure) into a ConsumeResult so callers branch on values
    instead of exceptions.
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

    async def consume_one_unit(self, user_id: str) -> ConsumeResult:
        try:
            movement = await self.repository.consume_unit(
                user_id, base_allowance=self.config.base_allowance
            )
        except LedgerConsistencyError as e:
            logger.critical("ledger_consistency_violation", user_id=user_id, error=str(e))
            return ConsumeResult(
                outcome=ConsumeOutcome.CONSISTENCY_VIOLATION,
                user_id=user_id,
                detail=str(e),
            )
        except LedgerStoreError as e:
            logger.warning("ledger_consume_store_error", user_id=user_id, error=str(e))
            return ConsumeResult(
                outcome=ConsumeOutcome.STORE_ERROR,
                user_id=user_id,
                detail=str(e),
            )

        if not movement.applied:
            logger.info("place_quota_exceeded", user_id=user_id, used_places=movement.used_places)
            return ConsumeResult(
                outcome=ConsumeOutcome.QUOTA_EXCEEDED,
                user_id=user_id,
                used_places=movement.used_places,
            )

        reservation = Reservation(
            user_id=user_id,
            premium=movement.premium,
            batch_id=movement.batch_id,
            created_at=self.now_provider(),
        )
        logger.info(
            "place_unit_consumed",
            user_id=user_id,
            used_places=movement.used_places,
            premium=movement.premium,
            batch_id=movement.batch_id,
        )
        return ConsumeResult(
            outcome=ConsumeOutcome.OK,
            user_id=user_id,
            used_places=movement.used_places,
            premium=movement.premium,
            batch_id=movement.batch_id,
            reservation=reservation,
        )

    async def release_one_unit(self, reservation: Reservation) -> UnitMovement | None:
        """
        Reverse a successful consume_one_unit.

        Decrements the usage counter and, past the base allowance, the newest
        batch that has consumed units. The store records the reservation id,
        so releasing the same reservation twice is a no-op on every worker.

        Returns:
            The stored movement, or None when nothing was handed back
            (already released, or usage already at zero).

        Raises:
            LedgerStoreError: if the release could not be written. The caller
                decides whether to retry; the reservation stays releasable.
        """
        movement = await self.repository.release_unit(
            reservation.user_id,
            reservation_id=reservation.reservation_id,
            base_allowance=self.config.base_allowance,
            premium=reservation.premium,
        )
        if not movement.applied:
            logger.info(
                "place_unit_release_skipped",
                user_id=reservation.user_id,
                reservation_id=reservation.reservation_id,
            )
            return None
        logger.info(
            "place_unit_released",
            user_id=reservation.user_id,
            reservation_id=reservation.reservation_id,
            batch_id=movement.batch_id,
            used_places=movement.used_places,
        )
        return movement
