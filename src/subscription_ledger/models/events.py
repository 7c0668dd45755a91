"""Domain events emitted after a transition commits."""
from __future__ import annotations
from datetime import datetime
from typing import Literal, Union
from uuid import UUID
from pydantic import BaseModel


class _SubscriptionEvent(BaseModel):
    subscription_id: UUID
    user_id: UUID
    occurred_at: datetime


class SubscriptionActivated(_SubscriptionEvent):
    name: Literal["subscription.activated"] = "subscription.activated"
    plan_id: UUID


class SubscriptionCancelled(_SubscriptionEvent):
    name: Literal["subscription.cancelled"] = "subscription.cancelled"
    reason: str | None = None


class SubscriptionExpired(_SubscriptionEvent):
    name: Literal["subscription.expired"] = "subscription.expired"


class PaymentFailed(_SubscriptionEvent):
    name: Literal["payment.failed"] = "payment.failed"
    new_status: str
    # Generic, safe to show to the end user.
    message: str = "Your payment could not be processed."


DomainEvent = Union[SubscriptionActivated, SubscriptionCancelled, SubscriptionExpired, PaymentFailed]
