"""Unit tests for Stripe service wrapper and event translation."""

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from place_ledger.config import StripeConfig
from place_ledger.models.events import (
    CustomerDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    PurchaseSucceeded,
    SubscriptionAttached,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from place_ledger.models.ledger import SubscriptionStatus
from place_ledger.services import stripe_service as stripe_service_module
from place_ledger.services.stripe_service import StripeService


def _subscription(**overrides) -> dict:
    subscription = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "items": {"data": [{"price": {"id": "price_premium"}}]},
        "current_period_start": 1735689600,
        "current_period_end": 1738368000,
        "cancel_at_period_end": False,
        "canceled_at": None,
    }
    subscription.update(overrides)
    return subscription


class FakeStripeModule:
    """Test double for stripe SDK."""

    def __init__(self):
        self.api_key = None
        self.Webhook = SimpleNamespace(construct_event=self._construct_event)
        self.Subscription = SimpleNamespace(retrieve=self._retrieve_subscription)
        self._event = {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}}
        self._subscription = _subscription()
        self.retrieved: list[str] = []

    def _construct_event(self, payload, sig_header, secret):
        if sig_header == "bad":
            raise RuntimeError("bad signature")
        assert payload == b'{"ok":true}'
        assert secret == "whsec_test"
        return self._event

    def _retrieve_subscription(self, subscription_id):
        self.retrieved.append(subscription_id)
        return self._subscription


def _config(**overrides) -> StripeConfig:
    fields = {"secret_key": "sk_test_123", "webhook_secret": "whsec_test"}
    fields.update(overrides)
    return StripeConfig(**fields)


@pytest.fixture
def fake_stripe(monkeypatch: pytest.MonkeyPatch) -> FakeStripeModule:
    fake = FakeStripeModule()
    monkeypatch.setattr(stripe_service_module, "stripe", fake)
    return fake


def _event(event_type: str, obj: dict) -> dict:
    return {"id": "evt_42", "type": event_type, "data": {"object": obj}}


class TestStripeService:
    def test_requires_secret_key(self, fake_stripe):
        with pytest.raises(ValueError, match="secret key is required"):
            StripeService(_config(secret_key=""))

    def test_sets_api_key(self, fake_stripe):
        StripeService(_config())

        assert fake_stripe.api_key == "sk_test_123"

    def test_verifies_webhook_event(self, fake_stripe):
        service = StripeService(_config())

        event = service.verify_webhook_event(b'{"ok":true}', "sig_ok")

        assert event["id"] == "evt_1"

    def test_verify_webhook_event_rejects_missing_signature(self, fake_stripe):
        service = StripeService(_config())

        with pytest.raises(ValueError, match="Missing Stripe-Signature"):
            service.verify_webhook_event(b'{"ok":true}', None)

    def test_verify_webhook_event_requires_secret(self, fake_stripe):
        service = StripeService(_config(webhook_secret=""))

        with pytest.raises(ValueError, match="webhook secret"):
            service.verify_webhook_event(b'{"ok":true}', "sig_ok")

    def test_bad_signature_propagates(self, fake_stripe):
        service = StripeService(_config())

        with pytest.raises(RuntimeError, match="bad signature"):
            service.verify_webhook_event(b'{"ok":true}', "bad")

    async def test_fetch_subscription_snapshot(self, fake_stripe):
        service = StripeService(_config())

        snapshot = await service.fetch_subscription_snapshot("sub_1")

        assert snapshot.subscription_id == "sub_1"
        assert snapshot.customer_id == "cus_1"
        assert snapshot.status == SubscriptionStatus.ACTIVE
        assert snapshot.price_id == "price_premium"
        assert snapshot.current_period_start == datetime(2025, 1, 1, tzinfo=UTC)
        assert fake_stripe.retrieved == ["sub_1"]


class TestSubscriptionSnapshot:
    def test_period_bounds_prefer_subscription_item(self, fake_stripe):
        service = StripeService(_config())
        subscription = _subscription(
            items={"data": [{"price": {"id": "price_premium"}, "current_period_end": 1740787200}]}
        )

        snapshot = service.subscription_snapshot_from_object(subscription)

        assert snapshot.current_period_end == datetime(2025, 3, 1, tzinfo=UTC)
        assert snapshot.current_period_start == datetime(2025, 1, 1, tzinfo=UTC)

    def test_missing_id_raises(self, fake_stripe):
        service = StripeService(_config())

        with pytest.raises(ValueError, match="missing id"):
            service.subscription_snapshot_from_object(_subscription(id=None))

    def test_unknown_status_raises(self, fake_stripe):
        service = StripeService(_config())

        with pytest.raises(ValueError, match="Unknown Stripe subscription status"):
            service.subscription_snapshot_from_object(_subscription(status="sleeping"))

    def test_missing_price_is_allowed(self, fake_stripe):
        service = StripeService(_config())

        snapshot = service.subscription_snapshot_from_object(_subscription(items={"data": []}))

        assert snapshot.price_id is None


class TestParseEvent:
    async def test_subscription_checkout_becomes_created(self, fake_stripe):
        service = StripeService(_config())
        event = _event(
            "checkout.session.completed",
            {"subscription": "sub_1", "metadata": {"user_id": "user-1"}},
        )

        parsed = await service.parse_event(event)

        assert isinstance(parsed, SubscriptionCreated)
        assert parsed.event_id == "evt_42"
        assert parsed.user_id == "user-1"
        assert parsed.snapshot.subscription_id == "sub_1"

    async def test_checkout_falls_back_to_client_reference_id(self, fake_stripe):
        service = StripeService(_config())
        event = _event(
            "checkout.session.completed",
            {"subscription": "sub_1", "client_reference_id": "user-2", "metadata": {}},
        )

        parsed = await service.parse_event(event)

        assert parsed.user_id == "user-2"

    async def test_one_time_checkout_is_skipped(self, fake_stripe):
        service = StripeService(_config())
        event = _event(
            "checkout.session.completed",
            {"metadata": {"type": "one_time_purchase", "user_id": "user-1"}},
        )

        assert await service.parse_event(event) is None
        assert fake_stripe.retrieved == []

    async def test_checkout_without_user_is_skipped(self, fake_stripe):
        service = StripeService(_config())
        event = _event("checkout.session.completed", {"subscription": "sub_1"})

        assert await service.parse_event(event) is None

    async def test_subscription_created_becomes_attached(self, fake_stripe):
        service = StripeService(_config())

        parsed = await service.parse_event(
            _event("customer.subscription.created", _subscription(status="trialing"))
        )

        assert isinstance(parsed, SubscriptionAttached)
        assert parsed.snapshot.status == SubscriptionStatus.TRIALING

    async def test_subscription_updated(self, fake_stripe):
        service = StripeService(_config())

        parsed = await service.parse_event(
            _event("customer.subscription.updated", _subscription(cancel_at_period_end=True))
        )

        assert isinstance(parsed, SubscriptionUpdated)
        assert parsed.snapshot.cancel_at_period_end is True

    async def test_subscription_deleted(self, fake_stripe):
        service = StripeService(_config())

        parsed = await service.parse_event(
            _event("customer.subscription.deleted", _subscription(canceled_at=1735689600))
        )

        assert isinstance(parsed, SubscriptionDeleted)
        assert parsed.subscription_id == "sub_1"
        assert parsed.canceled_at == datetime(2025, 1, 1, tzinfo=UTC)

    async def test_invoice_paid_fetches_subscription(self, fake_stripe):
        service = StripeService(_config())

        parsed = await service.parse_event(
            _event("invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_1"})
        )

        assert isinstance(parsed, InvoicePaid)
        assert fake_stripe.retrieved == ["sub_1"]

    async def test_invoice_failed_reads_nested_subscription(self, fake_stripe):
        service = StripeService(_config())
        invoice = {
            "id": "in_1",
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        }

        parsed = await service.parse_event(_event("invoice.payment_failed", invoice))

        assert isinstance(parsed, InvoicePaymentFailed)
        assert parsed.snapshot.subscription_id == "sub_1"

    async def test_invoice_without_subscription_is_skipped(self, fake_stripe):
        service = StripeService(_config())

        assert await service.parse_event(_event("invoice.payment_succeeded", {"id": "in_1"})) is None

    async def test_customer_deleted(self, fake_stripe):
        service = StripeService(_config())

        parsed = await service.parse_event(_event("customer.deleted", {"id": "cus_1"}))

        assert isinstance(parsed, CustomerDeleted)
        assert parsed.customer_id == "cus_1"

    async def test_payment_intent_becomes_purchase(self, fake_stripe):
        service = StripeService(_config())
        intent = {
            "id": "pi_1",
            "amount": 440,
            "currency": "jpy",
            "metadata": {
                "type": "one_time_purchase",
                "user_id": "user-1",
                "plan_type": "regular_pack",
                "places_count": "50",
            },
        }

        parsed = await service.parse_event(_event("payment_intent.succeeded", intent))

        assert isinstance(parsed, PurchaseSucceeded)
        assert parsed.external_purchase_id == "pi_1"
        assert parsed.purchase_kind == "one_time_purchase"
        assert parsed.places_count == 50
        assert parsed.amount == 440
        assert parsed.currency == "jpy"

    async def test_payment_intent_with_bad_count_keeps_none(self, fake_stripe):
        service = StripeService(_config())
        intent = {"id": "pi_1", "metadata": {"places_count": "lots"}}

        parsed = await service.parse_event(_event("payment_intent.succeeded", intent))

        assert parsed.places_count is None

    async def test_unhandled_event_returns_none(self, fake_stripe):
        service = StripeService(_config())

        assert await service.parse_event(_event("charge.refunded", {"id": "ch_1"})) is None
