import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from subscription_ledger.client import LedgerClient
from subscription_ledger.config import BillingConfig, StripeConfig
from subscription_ledger.models.plan import DEFAULT_PLANS
from subscription_ledger.providers import StripeProvider
from subscription_ledger.services import (
    CheckoutService, EventDispatcher, PlanCatalog, SubscriptionService, UsageCounters, WebhookProcessor,
)

from fakes import FakeUnitOfWork, InMemoryStore

WEBHOOK_SECRET = "whsec_test"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def store() -> InMemoryStore:
    """In-memory database with the stock plans; 'free' is the default."""
    s = InMemoryStore()
    for plan in DEFAULT_PLANS:
        s.add_plan(plan)
    return s


@pytest.fixture
def plans(store) -> dict:
    return {p.name: p for p in store.plans.values()}


@pytest.fixture
def uow_factory(store):
    return lambda: FakeUnitOfWork(store)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(max_payment_retries=3, monthly_period_days=30, yearly_period_days=365)


@pytest.fixture
def published() -> list:
    return []


@pytest.fixture
def dispatcher(published) -> EventDispatcher:
    d = EventDispatcher()
    d.subscribe(published.append)
    return d


@pytest.fixture
def service(uow_factory, billing_config, dispatcher, clock) -> SubscriptionService:
    return SubscriptionService(uow_factory, billing_config, dispatcher, clock=clock)


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(webhook_secret=WEBHOOK_SECRET, api_key="sk_test_123")


@pytest.fixture
def stripe_provider(stripe_config) -> StripeProvider:
    return StripeProvider(stripe_config)


@pytest.fixture
def processor(uow_factory, service, billing_config, stripe_provider, dispatcher, clock) -> WebhookProcessor:
    return WebhookProcessor(
        uow_factory, service, billing_config, {"stripe": stripe_provider}, dispatcher, clock=clock,
    )


@pytest.fixture
def usage(uow_factory, billing_config) -> UsageCounters:
    return UsageCounters(uow_factory, billing_config)


@pytest.fixture
def catalog(uow_factory) -> PlanCatalog:
    return PlanCatalog(uow_factory)


@pytest.fixture
def ledger(uow_factory, service, processor, usage, catalog, dispatcher) -> LedgerClient:
    """LedgerClient over the in-memory store: no engine, no network."""
    return LedgerClient(
        plans=catalog,
        usage=usage,
        subscriptions=service,
        webhooks=processor,
        checkout=CheckoutService(uow_factory, service, processor.providers),
        dispatcher=dispatcher,
    )


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def signed():
    """Serializes a Stripe event and returns (headers, raw_body) signed with the test secret."""

    def _signed(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None):
        body = json.dumps(event).encode("utf-8")
        return {"Stripe-Signature": stripe_signature(body, secret, timestamp)}, body

    return _signed
