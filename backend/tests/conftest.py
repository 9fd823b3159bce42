"""
Shared test fixtures for the place ledger test suite.
"""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from place_ledger.config import LedgerConfig
from place_ledger.models.ledger import CreditBatch
from place_ledger.services.ledger_store import InMemoryLedgerRepository


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests off real Supabase/Stripe even if a local .env exists."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__WEBHOOK_SECRET", "")


def _configure_test_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    _configure_test_structlog()


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from place_ledger.config import get_settings

    get_settings.cache_clear()

    from place_ledger.main import app

    # Importing main runs setup_logging, which caches loggers on first use
    _configure_test_structlog()

    return TestClient(app)


@pytest.fixture
def repo() -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository()


@pytest.fixture
def ledger_config() -> LedgerConfig:
    """Production catalog and the observed base allowance of 30."""
    return LedgerConfig(consume_retry_base_delay_seconds=0)


T1 = datetime(2025, 1, 10, 10, 0, tzinfo=UTC)


def seed_batch(
    repo: InMemoryLedgerRepository,
    *,
    user_id: str = "user-1",
    purchased: int = 10,
    consumed: int = 0,
    purchased_at: datetime = T1,
    active: bool = True,
    credit_type: str = "one_time_small",
    batch_id: str | None = None,
) -> CreditBatch:
    """Store a batch directly, bypassing ingestion."""
    extra = {"id": batch_id} if batch_id is not None else {}
    batch = CreditBatch(
        **extra,
        user_id=user_id,
        credit_type=credit_type,
        purchased=purchased,
        consumed=consumed,
        purchased_at=purchased_at,
        active=active,
        external_purchase_id=f"pi_{uuid.uuid4().hex[:16]}",
    )
    repo.batches[batch.id] = batch
    return batch


@pytest.fixture
def seed():
    """Expose seed_batch to tests without importing conftest."""
    return seed_batch


@pytest.fixture
def later():
    """Timestamps spaced one day apart after T1: later(1), later(2), ..."""

    def _later(days: int) -> datetime:
        return T1 + timedelta(days=days)

    return _later
