"""Reserve-then-write gate in front of place registration."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from place_ledger.config import LedgerConfig
from place_ledger.models.ledger import (
    ConsumeOutcome,
    ConsumeResult,
    RegistrationOutcome,
    RegistrationResult,
)
from place_ledger.services.credit_consumer import CreditConsumer
from place_ledger.services.ledger_store import LedgerStoreError

logger = structlog.get_logger(__name__)

PlaceInsert = Callable[[], Awaitable[dict[str, Any]]]

_OUTCOME_MAP: dict[ConsumeOutcome, RegistrationOutcome] = {
    ConsumeOutcome.QUOTA_EXCEEDED: RegistrationOutcome.QUOTA_EXCEEDED,
    ConsumeOutcome.STORE_ERROR: RegistrationOutcome.STORE_ERROR,
    ConsumeOutcome.CONSISTENCY_VIOLATION: RegistrationOutcome.CONSISTENCY_VIOLATION,
}


class RegistrationGate:
    """Spends one unit before a place row is written, and hands it back if the write fails."""

    def __init__(
        self,
        consumer: CreditConsumer,
        config: LedgerConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.consumer = consumer
        self.config = config
        self._sleep = sleep

    async def _consume_with_retry(self, user_id: str) -> tuple[ConsumeResult, int]:
        """
        Call consume_one_unit, retrying only transient store errors.

        Retries up to ``consume_max_retries`` attempts with exponential
        backoff. Quota exhaustion and consistency violations return at once.

        Returns:
            (last ConsumeResult, number of attempts made)
        """
        max_retries = self.config.consume_max_retries
        base_delay = self.config.consume_retry_base_delay_seconds

        for attempt in range(max_retries):
            result = await self.consumer.consume_one_unit(user_id)
            if not result.retryable:
                return result, attempt + 1
            if attempt + 1 < max_retries:
                delay = base_delay * (2**attempt)
                logger.warning(
                    "place_consume_retry",
                    user_id=user_id,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay_seconds=delay,
                )
                await self._sleep(delay)

        logger.error("place_consume_retries_exhausted", user_id=user_id, attempts=max_retries)
        return result, max_retries

    async def try_register_place(
        self, user_id: str, insert_place: PlaceInsert
    ) -> RegistrationResult:
        """
        Reserve capacity for one place, then run ``insert_place``.

        The insert only runs after a successful consume. If it raises, the
        unit is released again and INSERT_FAILED is returned.

        Args:
            user_id: Owner of the quota.
            insert_place: Collaborator coroutine that writes the place row.

        Returns:
            RegistrationResult describing the outcome.
        """
        consume, attempts = await self._consume_with_retry(user_id)
        if not consume.ok:
            return RegistrationResult(
                outcome=_OUTCOME_MAP[consume.outcome],
                consume=consume,
                attempts=attempts,
            )

        try:
            place = await insert_place()
        except Exception as e:
            logger.error("place_insert_failed", user_id=user_id, error=str(e))
            await self._release(consume)
            return RegistrationResult(
                outcome=RegistrationOutcome.INSERT_FAILED,
                consume=consume,
                attempts=attempts,
            )

        return RegistrationResult(
            outcome=RegistrationOutcome.REGISTERED,
            consume=consume,
            place=place,
            attempts=attempts,
        )

    async def _release(self, consume: ConsumeResult) -> None:
        reservation = consume.reservation
        if reservation is None:
            return
        try:
            await self.consumer.release_one_unit(reservation)
        except LedgerStoreError as e:
            # Stranded unit: needs manual correction of usage/batch counters
            logger.critical(
                "place_release_failed",
                user_id=reservation.user_id,
                reservation_id=reservation.reservation_id,
                batch_id=reservation.batch_id,
                error=str(e),
            )
