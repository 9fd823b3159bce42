"""Quota ledger models: persisted rows, derived summaries and result values."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from place_ledger.constants import PREMIUM_STATUSES


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states as reported by Stripe, plus NONE."""

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class CreditBatch(BaseModel):
    """A purchased block of place capacity with its own counters."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    credit_type: str
    purchased: int = Field(ge=0)
    consumed: int = Field(default=0, ge=0)
    purchased_at: datetime
    active: bool = True
    external_purchase_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _consumed_within_purchased(self) -> "CreditBatch":
        if self.consumed > self.purchased:
            raise ValueError(
                f"consumed ({self.consumed}) exceeds purchased ({self.purchased})"
            )
        return self

    @property
    def remaining(self) -> int:
        return self.purchased - self.consumed


class SubscriptionRecord(BaseModel):
    """The single subscription row kept per user."""

    user_id: str
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    price_id: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_premium(self) -> bool:
        return self.status.value in PREMIUM_STATUSES


class UsageCounter(BaseModel):
    """Lifetime count of places a user has registered."""

    user_id: str
    used_places: int = Field(default=0, ge=0)


class QuotaSource(BaseModel):
    """One bar of the per-source breakdown. ``limit=None`` means unlimited."""

    type: str
    label: str
    limit: int | None
    used: int = Field(ge=0)
    batch_id: str | None = None
    purchased_at: datetime | None = None


class AvailabilitySummary(BaseModel):
    """Display-only view of a user's capacity. ``None`` limits mean unlimited."""

    user_id: str
    plan: Literal["free", "premium"]
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    base_allowance: int
    total_limit: int | None
    used_places: int
    remaining_places: int | None
    purchased_total: int = 0
    consumed_total: int = 0
    sources: list[QuotaSource] = Field(default_factory=list)

    @property
    def is_unlimited(self) -> bool:
        return self.total_limit is None


class UnitMovement(BaseModel):
    """What a single atomic consume/release did to the stored counters."""

    applied: bool
    premium: bool = False
    used_places: int
    batch_id: str | None = None


class Reservation(BaseModel):
    """A consumed unit that can still be handed back by the gate."""

    reservation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    premium: bool = False
    batch_id: str | None = None
    created_at: datetime


class ConsumeOutcome(str, Enum):
    """Result of trying to spend one unit of capacity."""

    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORE_ERROR = "store_error"
    CONSISTENCY_VIOLATION = "consistency_violation"


class ConsumeResult(BaseModel):
    """Returned by CreditConsumer.consume_one_unit."""

    outcome: ConsumeOutcome
    user_id: str
    used_places: int | None = None
    premium: bool = False
    batch_id: str | None = None
    reservation: Reservation | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == ConsumeOutcome.OK

    @property
    def retryable(self) -> bool:
        return self.outcome == ConsumeOutcome.STORE_ERROR


class IngestOutcome(str, Enum):
    """Result of ingesting a payment-succeeded event."""

    CREATED = "created"
    IGNORED = "ignored"
    REJECTED = "rejected"


class IngestResult(BaseModel):
    """Returned by PurchaseIngester.ingest."""

    outcome: IngestOutcome
    batch: CreditBatch | None = None
    reason: str | None = None


class SyncOutcome(str, Enum):
    """Result of applying a subscription lifecycle event."""

    APPLIED = "applied"
    DROPPED = "dropped"


class SyncResult(BaseModel):
    """Returned by every SubscriptionSynchronizer handler."""

    outcome: SyncOutcome
    record: SubscriptionRecord | None = None
    reason: str | None = None


class RegistrationOutcome(str, Enum):
    """Result of registering a place behind the quota gate."""

    REGISTERED = "registered"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORE_ERROR = "store_error"
    CONSISTENCY_VIOLATION = "consistency_violation"
    INSERT_FAILED = "insert_failed"


class RegistrationResult(BaseModel):
    """Returned by RegistrationGate.try_register_place."""

    outcome: RegistrationOutcome
    consume: ConsumeResult
    place: dict[str, Any] | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.outcome == RegistrationOutcome.REGISTERED
