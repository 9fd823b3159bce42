"""Typed ledger events translated from verified Stripe webhooks."""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from place_ledger.models.ledger import SubscriptionStatus


class SubscriptionSnapshot(BaseModel):
    """Normalized Stripe subscription payload."""

    subscription_id: str
    customer_id: str
    status: SubscriptionStatus
    price_id: str | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None


class SubscriptionCreated(BaseModel):
    """Checkout completed for a subscription; keyed by the user id in metadata."""

    kind: Literal["subscription_created"] = "subscription_created"
    event_id: str
    user_id: str
    snapshot: SubscriptionSnapshot


class SubscriptionAttached(BaseModel):
    """Stripe created the subscription object; keyed by customer id."""

    kind: Literal["subscription_attached"] = "subscription_attached"
    event_id: str
    snapshot: SubscriptionSnapshot


class SubscriptionUpdated(BaseModel):
    kind: Literal["subscription_updated"] = "subscription_updated"
    event_id: str
    snapshot: SubscriptionSnapshot


class SubscriptionDeleted(BaseModel):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    event_id: str
    subscription_id: str
    canceled_at: datetime | None = None


class InvoicePaid(BaseModel):
    """invoice.payment_succeeded with the latest subscription truth attached."""

    kind: Literal["invoice_paid"] = "invoice_paid"
    event_id: str
    snapshot: SubscriptionSnapshot


class InvoicePaymentFailed(BaseModel):
    """invoice.payment_failed with the latest subscription truth attached."""

    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    event_id: str
    snapshot: SubscriptionSnapshot


class CustomerDeleted(BaseModel):
    kind: Literal["customer_deleted"] = "customer_deleted"
    event_id: str
    customer_id: str


class PurchaseSucceeded(BaseModel):
    """A verified payment for a credit pack.

    Fields mirror the payment metadata and may be missing on malformed
    events; PurchaseIngester decides whether the event is usable.
    """

    kind: Literal["purchase_succeeded"] = "purchase_succeeded"
    event_id: str
    external_purchase_id: str
    purchase_kind: str | None = None
    user_id: str | None = None
    plan_type: str | None = None
    places_count: int | None = None
    amount: int | None = None
    currency: str | None = None


SubscriptionEvent = Union[
    SubscriptionCreated,
    SubscriptionAttached,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    CustomerDeleted,
]

LedgerEvent = Annotated[
    Union[
        SubscriptionCreated,
        SubscriptionAttached,
        SubscriptionUpdated,
        SubscriptionDeleted,
        InvoicePaid,
        InvoicePaymentFailed,
        CustomerDeleted,
        PurchaseSucceeded,
    ],
    Field(discriminator="kind"),
]
