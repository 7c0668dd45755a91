"""
Same flows as the in-memory suite, against a real PostgreSQL in Docker:
advisory locks, the partial unique index, savepoints and JSONB round-trips.
Skipped when Docker is not available.
"""
import asyncio
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from subscription_ledger import create_ledger_client
from subscription_ledger.config import LedgerConfig, PostgresConfig, StripeConfig
from subscription_ledger.db import Base, FormORM
from subscription_ledger.exceptions import AlreadyCancelledError, ConflictError
from subscription_ledger.models.history import HistoryAction
from subscription_ledger.models.subscription import (
    NoPendingChange, PendingUpgrade, SubscriptionOptions, SubscriptionStatus,
)
from subscription_ledger.models.usage import LimitAction
from subscription_ledger.models.webhook import WebhookStatus

import stripe_events

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


@pytest.fixture(scope="module")
def postgres_config():
    """Starts one PostgreSQL container for the module."""
    try:
        from testcontainers.postgres import PostgresContainer
        container = PostgresContainer("postgres:16")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available: {e}")
    try:
        yield PostgresConfig(
            user=container.username,
            password=container.password,
            host=container.get_container_host_ip(),
            port=int(container.get_exposed_port(5432)),
            db=container.dbname,
            pool_size=10,
        )
    finally:
        container.stop()


@pytest_asyncio.fixture
async def pg_ledger(postgres_config):
    """A fully wired client on a fresh schema with the stock plans seeded."""
    client = create_ledger_client(LedgerConfig(
        postgres=postgres_config,
        stripe=StripeConfig(webhook_secret="whsec_test"),
    ))
    await client.create_schema()
    await client.plans.seed_defaults()
    yield client
    await client.aclose()
    engine = create_async_engine(postgres_config.get_pg_dsn())
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def pg_plans(pg_ledger):
    return {p.name: p for p in await pg_ledger.plans.list(include_inactive=True)}


async def test_connection_check(pg_ledger):
    statuses = await pg_ledger.check_connections()

    assert statuses == {"postgres": "ok", "providers": "stripe"}


async def test_concurrent_creation_on_postgres(pg_ledger, pg_plans):
    user_id = uuid4()

    results = await asyncio.gather(
        *(pg_ledger.subscriptions.create(user_id, pg_plans["basic"].id) for _ in range(5)),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, Exception)]
    assert len(created) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))


async def test_lifecycle_with_pending_upgrade(pg_ledger, pg_plans, signed):
    user_id = uuid4()
    sub = await pg_ledger.subscriptions.create(user_id, pg_plans["basic"].id, opts=SubscriptionOptions(
        payment_provider="stripe", provider_subscription_id="sub_pg_1",
    ))
    await pg_ledger.subscriptions.activate(sub.id)

    changed = await pg_ledger.subscriptions.request_plan_change(sub.id, pg_plans["pro"].id)
    assert isinstance(changed.pending_change, PendingUpgrade)
    stored = await pg_ledger.subscriptions.get(sub.id)
    assert stored.pending_change == changed.pending_change
    limit = await pg_ledger.usage.check_limit(user_id, LimitAction.create_form)
    assert limit.limit == pg_plans["basic"].max_forms

    headers, body = signed(stripe_events.invoice_paid(provider_subscription_id="sub_pg_1", amount=2999))
    result = await pg_ledger.webhooks.process("stripe", headers, body)

    assert result.status == WebhookStatus.processed
    upgraded = await pg_ledger.subscriptions.get(sub.id)
    assert upgraded.status == SubscriptionStatus.active
    assert upgraded.plan_id == pg_plans["pro"].id
    assert isinstance(upgraded.pending_change, NoPendingChange)
    actions = [h.action for h in await pg_ledger.subscriptions.subscription_history(sub.id)]
    assert actions == [
        HistoryAction.created, HistoryAction.activated, HistoryAction.upgrade_requested, HistoryAction.activated,
    ]
    limit = await pg_ledger.usage.check_limit(user_id, LimitAction.create_form)
    assert limit.limit == pg_plans["pro"].max_forms


async def test_webhook_replay_on_postgres(pg_ledger, pg_plans, signed):
    sub = await pg_ledger.subscriptions.create(uuid4(), pg_plans["basic"].id, opts=SubscriptionOptions(
        payment_provider="stripe", provider_subscription_id="sub_pg_2",
    ))
    headers, body = signed(stripe_events.invoice_failed(provider_subscription_id="sub_pg_2"))

    results = await asyncio.gather(*(pg_ledger.webhooks.process("stripe", headers, body) for _ in range(3)))

    assert sorted(r.status.value for r in results) == ["duplicate", "duplicate", "processed"]
    stored = await pg_ledger.subscriptions.get(sub.id)
    assert stored.metadata["paymentRetryCount"] == 1
    failures = [h for h in await pg_ledger.subscriptions.subscription_history(sub.id) if h.action == HistoryAction.payment_failed]
    assert len(failures) == 1


async def test_cancel_twice_on_postgres(pg_ledger, pg_plans):
    sub = await pg_ledger.subscriptions.create(uuid4(), pg_plans["free"].id)

    await pg_ledger.subscriptions.cancel(sub.id, reason="done")
    with pytest.raises(AlreadyCancelledError):
        await pg_ledger.subscriptions.cancel(sub.id)

    cancelled = [h for h in await pg_ledger.subscriptions.subscription_history(sub.id) if h.action == HistoryAction.cancelled]
    assert len(cancelled) == 1


async def test_form_counter_reads_owning_table(pg_ledger, postgres_config):
    user_id = uuid4()
    engine = create_async_engine(postgres_config.get_pg_dsn())
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    async with session_factory() as session:
        session.add_all([FormORM(user_id=user_id, title=f"form {i}") for i in range(3)])
        await session.commit()
    await engine.dispose()

    check = await pg_ledger.usage.check_limit(user_id, LimitAction.create_form)

    assert check.model_dump() == {"allowed": False, "limit": 3, "current": 3, "remaining": 0}
