"""Ledger storage contract and its in-memory and Supabase implementations."""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
import structlog
from postgrest.exceptions import APIError

from place_ledger.config import SupabaseTables
from place_ledger.models.ledger import (
    CreditBatch,
    SubscriptionRecord,
    SubscriptionStatus,
    UnitMovement,
)

logger = structlog.get_logger(__name__)

CONSISTENCY_ERROR_MARKER = "ledger_consistency_violation"
UNIQUE_VIOLATION_CODE = "23505"


class LedgerStoreError(Exception):
    """Transient storage failure. Safe to retry."""


class LedgerConsistencyError(LedgerStoreError):
    """Stored counters disagree with the quota total. Never retried."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LedgerRepository(Protocol):
    """Storage contract for credit batches, subscriptions and usage counters."""

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        """Fetch the subscription row for a user."""

    async def get_subscription_by_external_id(
        self, subscription_id: str
    ) -> SubscriptionRecord | None:
        """Fetch the subscription row by Stripe subscription ID."""

    async def get_subscription_by_customer_id(
        self, customer_id: str
    ) -> SubscriptionRecord | None:
        """Fetch the subscription row by Stripe customer ID."""

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Insert or replace the subscription row, keyed by user_id."""

    async def list_credit_batches(
        self, user_id: str, *, active_only: bool = True
    ) -> list[CreditBatch]:
        """Credit batches for a user, oldest purchase first."""

    async def get_credit_batch_by_purchase_id(
        self, external_purchase_id: str
    ) -> CreditBatch | None:
        """Fetch a batch by the payment it was created from."""

    async def insert_credit_batch(self, batch: CreditBatch) -> CreditBatch | None:
        """Persist a new batch.

        Returns None when a batch for the same external purchase already exists.
        """

    async def get_used_places(self, user_id: str) -> int:
        """Current lifetime usage counter (0 when the user has none)."""

    async def consume_unit(self, user_id: str, *, base_allowance: int) -> UnitMovement:
        """Atomically spend one unit.

        Raises:
            LedgerConsistencyError: usage was incremented past the base allowance
                but no active batch had capacity left.
            LedgerStoreError: transient storage failure; nothing was changed.
        """

    async def release_unit(
        self,
        user_id: str,
        *,
        reservation_id: str,
        base_allowance: int,
        premium: bool = False,
    ) -> UnitMovement:
        """Atomically hand back one unit previously spent by consume_unit.

        Reverses the ledger's current position rather than the batch the
        reservation drew from: past the base allowance the newest batch with
        consumed units gives one back, so consumed counters remain a prefix
        of the oldest-first order. Premium units never touch batches.

        A reservation id is recorded on first release; releasing it again
        returns ``applied=False`` and changes nothing.
        """


class InMemoryLedgerRepository:
    """In-memory repository used for tests and local fallback.

    A per-user asyncio.Lock serializes consume/release so concurrent callers
    see the same guarantees as the row-locked Postgres functions.
    """

    def __init__(self) -> None:
        self.subscriptions: dict[str, SubscriptionRecord] = {}
        self.batches: dict[str, CreditBatch] = {}
        self.usage: dict[str, int] = {}
        self.released: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        record = self.subscriptions.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def get_subscription_by_external_id(
        self, subscription_id: str
    ) -> SubscriptionRecord | None:
        for record in self.subscriptions.values():
            if record.external_subscription_id == subscription_id:
                return record.model_copy(deep=True)
        return None

    async def get_subscription_by_customer_id(
        self, customer_id: str
    ) -> SubscriptionRecord | None:
        for record in self.subscriptions.values():
            if record.external_customer_id == customer_id:
                return record.model_copy(deep=True)
        return None

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        stored = record.model_copy(deep=True)
        self.subscriptions[stored.user_id] = stored
        return stored.model_copy(deep=True)

    def _sorted_batches(self, user_id: str, *, active_only: bool) -> list[CreditBatch]:
        batches = [
            b
            for b in self.batches.values()
            if b.user_id == user_id and (b.active or not active_only)
        ]
        return sorted(batches, key=lambda b: (b.purchased_at, b.id))

    async def list_credit_batches(
        self, user_id: str, *, active_only: bool = True
    ) -> list[CreditBatch]:
        return [
            b.model_copy(deep=True)
            for b in self._sorted_batches(user_id, active_only=active_only)
        ]

    async def get_credit_batch_by_purchase_id(
        self, external_purchase_id: str
    ) -> CreditBatch | None:
        for batch in self.batches.values():
            if batch.external_purchase_id == external_purchase_id:
                return batch.model_copy(deep=True)
        return None

    async def insert_credit_batch(self, batch: CreditBatch) -> CreditBatch | None:
        if await self.get_credit_batch_by_purchase_id(batch.external_purchase_id):
            return None
        stored = batch.model_copy(deep=True)
        self.batches[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_used_places(self, user_id: str) -> int:
        return self.usage.get(user_id, 0)

    async def consume_unit(self, user_id: str, *, base_allowance: int) -> UnitMovement:
        async with self._locks[user_id]:
            used = self.usage.get(user_id, 0)
            subscription = self.subscriptions.get(user_id)
            if subscription is not None and subscription.is_premium:
                self.usage[user_id] = used + 1
                return UnitMovement(applied=True, premium=True, used_places=used + 1)

            batches = self._sorted_batches(user_id, active_only=True)
            total_limit = base_allowance + sum(b.purchased for b in batches)
            if used >= total_limit:
                return UnitMovement(applied=False, used_places=used)

            new_used = used + 1
            batch_id: str | None = None
            if new_used > base_allowance:
                target = next((b for b in batches if b.consumed < b.purchased), None)
                if target is None:
                    raise LedgerConsistencyError(
                        f"{CONSISTENCY_ERROR_MARKER}: user {user_id} has used={new_used} "
                        f"within total_limit={total_limit} but no batch has capacity"
                    )
                target.consumed += 1
                batch_id = target.id

            self.usage[user_id] = new_used
            return UnitMovement(applied=True, used_places=new_used, batch_id=batch_id)

    async def release_unit(
        self,
        user_id: str,
        *,
        reservation_id: str,
        base_allowance: int,
        premium: bool = False,
    ) -> UnitMovement:
        async with self._locks[user_id]:
            used = self.usage.get(user_id, 0)
            if used == 0 or reservation_id in self.released:
                return UnitMovement(applied=False, premium=premium, used_places=used)

            batch_id: str | None = None
            if not premium and used > base_allowance:
                newest = next(
                    (
                        b
                        for b in reversed(self._sorted_batches(user_id, active_only=True))
                        if b.consumed > 0
                    ),
                    None,
                )
                if newest is not None:
                    newest.consumed -= 1
                    batch_id = newest.id

            self.released.add(reservation_id)
            self.usage[user_id] = used - 1
            return UnitMovement(
                applied=True, premium=premium, used_places=used - 1, batch_id=batch_id
            )


# ---------------------------------------------------------------------------
# Supabase row mapping
# ---------------------------------------------------------------------------


def batch_from_row(row: dict[str, Any]) -> CreditBatch:
    return CreditBatch(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        credit_type=row["credit_type"],
        purchased=row["places_purchased"],
        consumed=row.get("places_consumed") or 0,
        purchased_at=row["purchased_at"],
        active=row.get("is_active", True),
        external_purchase_id=row["stripe_payment_intent_id"],
        metadata=row.get("metadata") or {},
    )


def batch_to_row(batch: CreditBatch) -> dict[str, Any]:
    return {
        "id": batch.id,
        "user_id": batch.user_id,
        "credit_type": batch.credit_type,
        "places_purchased": batch.purchased,
        "places_consumed": batch.consumed,
        "purchased_at": batch.purchased_at.isoformat(),
        "is_active": batch.active,
        "stripe_payment_intent_id": batch.external_purchase_id,
        "metadata": batch.metadata,
    }


def subscription_from_row(row: dict[str, Any]) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=str(row["user_id"]),
        external_customer_id=row.get("stripe_customer_id"),
        external_subscription_id=row.get("stripe_subscription_id"),
        price_id=row.get("stripe_price_id"),
        status=SubscriptionStatus(row.get("status") or SubscriptionStatus.NONE.value),
        trial_start=row.get("trial_start"),
        trial_end=row.get("trial_end"),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        updated_at=row.get("updated_at"),
    )


def subscription_to_row(record: SubscriptionRecord) -> dict[str, Any]:
    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    return {
        "user_id": record.user_id,
        "stripe_customer_id": record.external_customer_id,
        "stripe_subscription_id": record.external_subscription_id,
        "stripe_price_id": record.price_id,
        "status": record.status.value,
        "trial_start": _iso(record.trial_start),
        "trial_end": _iso(record.trial_end),
        "current_period_start": _iso(record.current_period_start),
        "current_period_end": _iso(record.current_period_end),
        "cancel_at_period_end": record.cancel_at_period_end,
        "canceled_at": _iso(record.canceled_at),
        "updated_at": _utcnow().isoformat(),
    }


def _movement_from_rpc(data: Any) -> UnitMovement:
    # PostgREST returns a scalar json for `returns jsonb`, a list for set-returning functions
    payload = data[0] if isinstance(data, list) else data
    if not payload:
        raise LedgerStoreError("ledger RPC returned no data")
    return UnitMovement(
        applied=bool(payload.get("applied")),
        premium=bool(payload.get("premium")),
        used_places=int(payload.get("used_places") or 0),
        batch_id=str(payload["batch_id"]) if payload.get("batch_id") else None,
    )


class SupabaseLedgerRepository:
    """Supabase-backed repository.

    Reads and upserts go through PostgREST; consume/release call Postgres
    functions (see supabase/migrations) that lock the usage row and the
    chosen batch inside one transaction.
    """

    def __init__(self, client, tables: SupabaseTables | None = None):
        self.client = client
        self.tables = tables or SupabaseTables()

    async def _select_one(self, table: str, column: str, value: str) -> dict | None:
        try:
            response = (
                await self.client.table(table)
                .select("*")
                .eq(column, value)
                .limit(1)
                .execute()
            )
        except (APIError, httpx.HTTPError) as e:
            raise LedgerStoreError(f"select from {table} failed: {e}") from e
        rows = response.data or []
        return rows[0] if rows else None

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        row = await self._select_one(self.tables.subscriptions, "user_id", user_id)
        return subscription_from_row(row) if row else None

    async def get_subscription_by_external_id(
        self, subscription_id: str
    ) -> SubscriptionRecord | None:
        row = await self._select_one(
            self.tables.subscriptions, "stripe_subscription_id", subscription_id
        )
        return subscription_from_row(row) if row else None

    async def get_subscription_by_customer_id(
        self, customer_id: str
    ) -> SubscriptionRecord | None:
        row = await self._select_one(
            self.tables.subscriptions, "stripe_customer_id", customer_id
        )
        return subscription_from_row(row) if row else None

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        try:
            response = (
                await self.client.table(self.tables.subscriptions)
                .upsert(subscription_to_row(record), on_conflict="user_id")
                .execute()
            )
        except (APIError, httpx.HTTPError) as e:
            raise LedgerStoreError(f"subscription upsert failed: {e}") from e
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return record
        return subscription_from_row(rows[0])

    async def list_credit_batches(
        self, user_id: str, *, active_only: bool = True
    ) -> list[CreditBatch]:
        query = self.client.table(self.tables.credits).select("*").eq("user_id", user_id)
        if active_only:
            query = query.eq("is_active", True)
        try:
            response = await query.order("purchased_at", desc=False).execute()
        except (APIError, httpx.HTTPError) as e:
            raise LedgerStoreError(f"credit batch listing failed: {e}") from e
        return [batch_from_row(row) for row in response.data or []]

    async def get_credit_batch_by_purchase_id(
        self, external_purchase_id: str
    ) -> CreditBatch | None:
        row = await self._select_one(
            self.tables.credits, "stripe_payment_intent_id", external_purchase_id
        )
        return batch_from_row(row) if row else None

    async def insert_credit_batch(self, batch: CreditBatch) -> CreditBatch | None:
        try:
            response = (
                await self.client.table(self.tables.credits)
                .insert(batch_to_row(batch))
                .execute()
            )
        except APIError as e:
            if e.code == UNIQUE_VIOLATION_CODE:
                return None
            raise LedgerStoreError(f"credit batch insert failed: {e}") from e
        except httpx.HTTPError as e:
            raise LedgerStoreError(f"credit batch insert failed: {e}") from e
        rows = response.data or []
        return batch_from_row(rows[0]) if rows else batch

    async def get_used_places(self, user_id: str) -> int:
        row = await self._select_one(self.tables.usage, "user_id", user_id)
        return int(row.get("used_places") or 0) if row else 0

    async def _call_rpc(self, name: str, params: dict[str, Any]) -> UnitMovement:
        try:
            response = await self.client.rpc(name, params).execute()
        except APIError as e:
            if CONSISTENCY_ERROR_MARKER in (e.message or ""):
                raise LedgerConsistencyError(e.message) from e
            raise LedgerStoreError(f"{name} failed: {e}") from e
        except httpx.HTTPError as e:
            raise LedgerStoreError(f"{name} failed: {e}") from e
        return _movement_from_rpc(response.data)

    async def consume_unit(self, user_id: str, *, base_allowance: int) -> UnitMovement:
        return await self._call_rpc(
            self.tables.consume_rpc,
            {"p_user_id": user_id, "p_base_allowance": base_allowance},
        )

    async def release_unit(
        self,
        user_id: str,
        *,
        reservation_id: str,
        base_allowance: int,
        premium: bool = False,
    ) -> UnitMovement:
        return await self._call_rpc(
            self.tables.release_rpc,
            {
                "p_user_id": user_id,
                "p_reservation_id": reservation_id,
                "p_base_allowance": base_allowance,
                "p_premium": premium,
            },
        )
