from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

from subscription_ledger.exceptions import (
    ConflictError, InvalidTransitionError, LedgerError, NotFoundError, ProviderError, TransientProviderError,
)
from subscription_ledger.server.main import create_app, status_for

import stripe_events


@pytest.fixture
def client(ledger):
    with TestClient(create_app(ledger)) as c:
        yield c


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def auth(user_id):
    return {"X-User-Id": str(user_id)}


def test_create_and_read_current(client, auth, plans):
    response = client.post("/subscriptions", json={"plan_id": str(plans["basic"].id)}, headers=auth)

    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "pending"
    assert created["pending_change"] == {"type": "none"}

    current = client.get("/subscriptions/current", headers=auth).json()
    assert current["subscription"]["id"] == created["id"]
    assert [h["action"] for h in current["history"]] == ["created"]


def test_second_subscription_conflicts(client, auth, plans):
    client.post("/subscriptions", json={"plan_id": str(plans["basic"].id)}, headers=auth)

    response = client.post("/subscriptions", json={"plan_id": str(plans["pro"].id)}, headers=auth)

    assert response.status_code == 409
    assert response.json()["error"] == "CONFLICT"


def test_missing_user_header_is_rejected(client, plans):
    response = client.post("/subscriptions", json={"plan_id": str(plans["basic"].id)})

    assert response.status_code == 422


def test_unknown_plan_is_404(client, auth):
    response = client.post("/subscriptions", json={"plan_id": str(uuid4())}, headers=auth)

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


def test_change_plan_and_cancel(client, auth, plans):
    sub = client.post("/subscriptions", json={"plan_id": str(plans["basic"].id)}, headers=auth).json()

    changed = client.post(f"/subscriptions/{sub['id']}/change-plan", json={"plan_id": str(plans["pro"].id)}, headers=auth)
    assert changed.status_code == 200
    assert changed.json()["pending_change"]["type"] == "upgrade"
    assert changed.json()["plan_id"] == str(plans["basic"].id)

    first = client.post(f"/subscriptions/{sub['id']}/cancel", json={"reason": "moving on"}, headers=auth)
    second = client.post(f"/subscriptions/{sub['id']}/cancel", json={}, headers=auth)
    assert first.status_code == second.status_code == 200
    assert first.json()["status"] == second.json()["status"] == "cancelled"
    assert first.json()["cancelled_at"] == second.json()["cancelled_at"]


def test_same_plan_change_is_409(client, auth, plans):
    sub = client.post("/subscriptions", json={"plan_id": str(plans["basic"].id)}, headers=auth).json()

    response = client.post(f"/subscriptions/{sub['id']}/change-plan", json={"plan_id": str(plans["basic"].id)}, headers=auth)

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"


def test_other_users_subscription_looks_missing(client, auth, plans):
    sub = client.post("/subscriptions", json={"plan_id": str(plans["basic"].id)}, headers=auth).json()

    response = client.post(f"/subscriptions/{sub['id']}/cancel", json={}, headers={"X-User-Id": str(uuid4())})

    assert response.status_code == 404


def test_limits_and_usage(client, auth, user_id, store):
    store.add_form(user_id)

    limit = client.get("/subscriptions/limits/create_form", headers=auth)
    missing_resource = client.get("/subscriptions/limits/export_form", headers=auth)
    usage = client.get("/subscriptions/usage", headers=auth)

    assert limit.json() == {"allowed": True, "limit": 3, "current": 1, "remaining": 2}
    assert missing_resource.status_code == 422
    assert usage.json()["plan_name"] == "free"
    assert usage.json()["forms"]["current"] == 1


def test_available_plans(client, auth):
    response = client.get("/subscriptions/plans", headers=auth)

    assert response.status_code == 200
    assert {o["plan"]["name"] for o in response.json()} == {"free", "basic", "pro", "lifetime"}


def test_webhook_roundtrip(client, plans, store, signed):
    sub = client.post(
        "/subscriptions", json={"plan_id": str(plans["basic"].id)}, headers={"X-User-Id": str(uuid4())},
    ).json()
    headers, body = signed(stripe_events.checkout_completed(sub["id"]))

    first = client.post("/webhooks/stripe", content=body, headers=headers)
    replay = client.post("/webhooks/stripe", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert replay.status_code == 200
    assert replay.json()["status"] == "duplicate"
    assert store.subscriptions[UUID(sub["id"])].status == "active"


def test_webhook_bad_signature_is_400(client, signed, store):
    headers, body = signed(stripe_events.invoice_paid(), secret="whsec_wrong")

    response = client.post("/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"
    assert store.payments == {}


def test_webhook_unknown_provider_is_404(client, signed):
    headers, body = signed(stripe_events.invoice_paid())

    response = client.post("/webhooks/paddle", content=body, headers=headers)

    assert response.status_code == 404


@pytest.mark.parametrize("exc, code", [
    (NotFoundError("x"), 404),
    (ConflictError("x"), 409),
    (InvalidTransitionError("x"), 409),
    (TransientProviderError("x"), 503),
    (ProviderError("x"), 502),
    (LedgerError("x"), 500),
])
def test_status_mapping(exc, code):
    assert status_for(exc) == code
