"""Unit tests for credit pack ingestion."""

from datetime import UTC, datetime

import pytest
from structlog.testing import capture_logs

from place_ledger.config import LedgerConfig
from place_ledger.models.events import PurchaseSucceeded
from place_ledger.models.ledger import CreditBatch, IngestOutcome
from place_ledger.services.ledger_store import InMemoryLedgerRepository, LedgerStoreError
from place_ledger.services.purchase_ingester import PurchaseIngester

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


def _event(**overrides) -> PurchaseSucceeded:
    fields = {
        "event_id": "evt_1",
        "external_purchase_id": "pi_1",
        "purchase_kind": "one_time_purchase",
        "user_id": "user-1",
        "plan_type": "small_pack",
        "places_count": 10,
        "amount": 110,
        "currency": "jpy",
    }
    fields.update(overrides)
    return PurchaseSucceeded(**fields)


def _ingester(repo, config: LedgerConfig | None = None) -> PurchaseIngester:
    return PurchaseIngester(repo, config or LedgerConfig(), now_provider=lambda: NOW)


class RacingRepository(InMemoryLedgerRepository):
    """Another delivery inserts the same purchase between lookup and insert."""

    async def insert_credit_batch(self, batch: CreditBatch) -> CreditBatch | None:
        await super().insert_credit_batch(batch.model_copy(update={"id": "winner"}))
        return await super().insert_credit_batch(batch)


class BrokenRepository(InMemoryLedgerRepository):
    async def get_credit_batch_by_purchase_id(self, external_purchase_id: str):
        raise LedgerStoreError("connection refused")


class TestIngestCreatesBatch:
    async def test_small_pack_creates_batch(self, repo):
        result = await _ingester(repo).ingest(_event())

        assert result.outcome == IngestOutcome.CREATED
        batch = result.batch
        assert batch.user_id == "user-1"
        assert batch.credit_type == "one_time_small"
        assert batch.purchased == 10
        assert batch.consumed == 0
        assert batch.active is True
        assert batch.purchased_at == NOW
        assert batch.external_purchase_id == "pi_1"
        assert batch.metadata == {"payment_intent_id": "pi_1", "amount": 110, "currency": "jpy"}
        assert len(repo.batches) == 1

    async def test_regular_pack_maps_credit_type(self, repo):
        result = await _ingester(repo).ingest(
            _event(plan_type="regular_pack", places_count=50, amount=440)
        )

        assert result.batch.credit_type == "one_time_regular"
        assert result.batch.purchased == 50

    async def test_paid_places_win_over_catalog_size(self, repo):
        with capture_logs() as logs:
            result = await _ingester(repo).ingest(_event(places_count=12))

        assert result.outcome == IngestOutcome.CREATED
        assert result.batch.purchased == 12
        assert any(e["event"] == "purchase_places_differ_from_catalog" for e in logs)


class TestIngestIdempotency:
    async def test_duplicate_purchase_is_ignored(self, repo):
        ingester = _ingester(repo)

        first = await ingester.ingest(_event())
        second = await ingester.ingest(_event(event_id="evt_2"))

        assert first.outcome == IngestOutcome.CREATED
        assert second.outcome == IngestOutcome.IGNORED
        assert second.batch.id == first.batch.id
        assert len(repo.batches) == 1

    async def test_lost_insert_race_is_ignored(self):
        repo = RacingRepository()

        result = await _ingester(repo).ingest(_event())

        assert result.outcome == IngestOutcome.IGNORED
        assert result.batch.id == "winner"
        assert len(repo.batches) == 1


class TestIngestRejections:
    @pytest.mark.parametrize(
        ("overrides", "reason"),
        [
            ({"purchase_kind": "subscription"}, "unsupported purchase kind"),
            ({"purchase_kind": None}, "unsupported purchase kind"),
            ({"user_id": None}, "missing metadata: user_id"),
            ({"plan_type": None}, "missing metadata: plan_type"),
            ({"places_count": None}, "missing metadata: places_count"),
            ({"plan_type": "mega_pack"}, "unknown plan type"),
            ({"places_count": -5}, "invalid places count"),
        ],
    )
    async def test_malformed_event_is_rejected(self, repo, overrides, reason):
        with capture_logs() as logs:
            result = await _ingester(repo).ingest(_event(**overrides))

        assert result.outcome == IngestOutcome.REJECTED
        assert reason in result.reason
        assert repo.batches == {}
        rejected = [e for e in logs if e["event"] == "purchase_rejected"]
        assert rejected[0]["log_level"] == "error"
        assert rejected[0]["external_purchase_id"] == "pi_1"

    async def test_custom_catalog_is_used(self, repo):
        config = LedgerConfig(
            purchase_plans={
                "trial_pack": {"places": 3, "credit_type": "one_time_trial", "label": "Trial"}
            }
        )

        accepted = await _ingester(repo, config).ingest(
            _event(plan_type="trial_pack", places_count=3)
        )
        rejected = await _ingester(repo, config).ingest(
            _event(external_purchase_id="pi_2", plan_type="small_pack")
        )

        assert accepted.batch.credit_type == "one_time_trial"
        assert rejected.outcome == IngestOutcome.REJECTED


class TestIngestStoreErrors:
    async def test_store_error_propagates(self):
        with pytest.raises(LedgerStoreError):
            await _ingester(BrokenRepository()).ingest(_event())
