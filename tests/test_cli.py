from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from typer.testing import CliRunner

from subscription_ledger import cli
from subscription_ledger.exceptions import DatabaseError
from subscription_ledger.models.plan import BillingCycle
from subscription_ledger.models.subscription import Subscription, SubscriptionStatus

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_ledger(ledger, monkeypatch):
    """Every command gets the in-memory ledger instead of one built from the environment."""
    monkeypatch.setattr(cli, "create_ledger_client", lambda: ledger)
    return ledger


@pytest.fixture(autouse=True)
def log_levels(monkeypatch):
    levels = []
    monkeypatch.setattr(cli, "configure_logging", levels.append)
    return levels


def _due_subscription(store, plan, clock) -> Subscription:
    sub = Subscription(
        id=uuid4(), user_id=uuid4(), plan_id=plan.id, plan_type=plan.billing_model,
        status=SubscriptionStatus.active, billing_cycle=BillingCycle.monthly,
        amount=Decimal("9.99"), currency="USD",
        start_date=clock.now - timedelta(days=40), end_date=clock.now - timedelta(days=10),
        auto_renew=False, created_at=store.tick(),
    )
    store.subscriptions[sub.id] = sub
    return sub


def test_init_creates_schema_and_seeds(cli_ledger, store, monkeypatch):
    created = []

    async def create_schema():
        created.append(True)

    monkeypatch.setattr(cli_ledger, "create_schema", create_schema)
    store.plans.clear()

    result = runner.invoke(cli.app, ["init"])

    assert result.exit_code == 0, result.output
    assert created == [True]
    assert "Database tables created successfully" in result.output
    assert "Seeded plans:" in result.output
    assert len(store.plans) == 4


def test_init_without_seed(cli_ledger, store, monkeypatch):
    async def create_schema():
        return None

    monkeypatch.setattr(cli_ledger, "create_schema", create_schema)
    store.plans.clear()

    result = runner.invoke(cli.app, ["init", "--no-seed"])

    assert result.exit_code == 0, result.output
    assert store.plans == {}


def test_check_ok(cli_ledger, log_levels, monkeypatch):
    async def ok():
        return None

    monkeypatch.setattr(cli_ledger, "check_connection", ok)

    result = runner.invoke(cli.app, ["--log-level", "DEBUG", "check"])

    assert result.exit_code == 0, result.output
    assert "PostgreSQL connection: OK" in result.output
    assert "Payment providers: stripe" in result.output
    assert log_levels == ["DEBUG"]


def test_check_fails_when_postgres_is_down(cli_ledger, monkeypatch):
    async def down():
        raise DatabaseError("Failed to connect to the database.")

    monkeypatch.setattr(cli_ledger, "check_connection", down)

    result = runner.invoke(cli.app, ["check"])

    assert result.exit_code == 1
    assert "PostgreSQL connection: FAILED" in result.output


def test_plans_lists_catalog():
    result = runner.invoke(cli.app, ["plans"])

    assert result.exit_code == 0, result.output
    assert "basic" in result.output


def test_set_default(store):
    result = runner.invoke(cli.app, ["set-default", "pro"])

    assert result.exit_code == 0, result.output
    assert "'pro' is now the default plan" in result.output
    assert [p.name for p in store.plans.values() if p.is_default] == ["pro"]


def test_set_default_unknown_plan():
    result = runner.invoke(cli.app, ["set-default", "enterprise"])

    assert result.exit_code == 1
    assert "Plan 'enterprise' not found" in result.output


def test_expire_runs_one_sweep(store, plans, clock):
    sub = _due_subscription(store, plans["basic"], clock)

    result = runner.invoke(cli.app, ["expire"])

    assert result.exit_code == 0, result.output
    assert "Expired: 1, failed: 0" in result.output
    assert store.subscriptions[sub.id].status == SubscriptionStatus.expired


def test_expire_exit_code_on_failure(store, plans, clock):
    sub = _due_subscription(store, plans["basic"], clock)
    store.fail_updates_for.add(sub.id)

    result = runner.invoke(cli.app, ["expire"])

    assert result.exit_code == 1
    assert "Expired: 0, failed: 1" in result.output
