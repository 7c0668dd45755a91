from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from subscription_ledger.exceptions import AlreadyCancelledError, NotFoundError
from subscription_ledger.models.history import HistoryEntry
from subscription_ledger.models.plan import BillingCycle
from subscription_ledger.models.subscription import ChangeDirection, PlanOption, Subscription, SubscriptionOptions
from subscription_ledger.models.usage import LimitAction, LimitCheck, UsageSummary
from subscription_ledger.models.webhook import CheckoutResult
from .auth import CurrentUserId, Ledger

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


class CreateSubscriptionRequest(BaseModel):
    plan_id: UUID
    billing_cycle: BillingCycle = BillingCycle.monthly


class ChangePlanRequest(BaseModel):
    plan_id: UUID
    direction: Optional[ChangeDirection] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CheckoutRequest(BaseModel):
    plan_id: UUID
    billing_cycle: BillingCycle = BillingCycle.monthly
    provider: str = "stripe"
    email: Optional[str] = None


class CurrentSubscription(BaseModel):
    subscription: Optional[Subscription] = None
    history: List[HistoryEntry] = []


def _client_info(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def _owned(ledger, user_id: UUID, subscription_id: UUID) -> Subscription:
    sub = await ledger.subscriptions.get(subscription_id)
    if sub.user_id != user_id:
        # Somebody else's subscription looks exactly like a missing one.
        raise NotFoundError(f"Subscription {subscription_id} not found.")
    return sub


@router.post("", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def create_subscription(body: CreateSubscriptionRequest, request: Request, user_id: CurrentUserId, ledger: Ledger):
    opts = SubscriptionOptions(changed_by=f"user:{user_id}", **_client_info(request))
    return await ledger.subscriptions.create(user_id, body.plan_id, body.billing_cycle, opts)


@router.get("/current", response_model=CurrentSubscription)
async def current_subscription(user_id: CurrentUserId, ledger: Ledger, limit: int = 20, offset: int = 0):
    sub = await ledger.subscriptions.get_current(user_id)
    history = await ledger.subscriptions.history(user_id, limit=limit, offset=offset)
    return CurrentSubscription(subscription=sub, history=history)


@router.get("/plans", response_model=List[PlanOption])
async def available_plans(user_id: CurrentUserId, ledger: Ledger):
    return await ledger.subscriptions.available_plans(user_id)


@router.post("/{subscription_id}/change-plan", response_model=Subscription)
async def change_plan(subscription_id: UUID, body: ChangePlanRequest, user_id: CurrentUserId, ledger: Ledger):
    await _owned(ledger, user_id, subscription_id)
    return await ledger.subscriptions.request_plan_change(
        subscription_id, body.plan_id, body.direction, changed_by=f"user:{user_id}",
    )


@router.post("/{subscription_id}/cancel", response_model=Subscription)
async def cancel_subscription(subscription_id: UUID, body: CancelRequest, user_id: CurrentUserId, ledger: Ledger):
    await _owned(ledger, user_id, subscription_id)
    try:
        return await ledger.subscriptions.cancel(subscription_id, reason=body.reason, actor=f"user:{user_id}")
    except AlreadyCancelledError as e:
        return e.subscription


@router.post("/checkout", response_model=CheckoutResult)
async def start_checkout(body: CheckoutRequest, user_id: CurrentUserId, ledger: Ledger):
    return await ledger.checkout.start_checkout(
        user_id, body.plan_id, body.billing_cycle, provider=body.provider, customer_email=body.email,
    )


@router.get("/limits/{action}", response_model=LimitCheck)
async def check_limit(action: LimitAction, user_id: CurrentUserId, ledger: Ledger, resource_id: Optional[UUID] = None):
    return await ledger.usage.check_limit(user_id, action, resource_id)


@router.get("/usage", response_model=UsageSummary)
async def usage_summary(user_id: CurrentUserId, ledger: Ledger):
    return await ledger.usage.usage_summary(user_id)
