# File: subscription_ledger/models/subscription.py

from __future__ import annotations
import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID
from pydantic import BaseModel, Field

from .plan import BillingCycle, BillingModel, Plan


class SubscriptionStatus(str, Enum):
    pending = "pending"
    active = "active"
    suspended = "suspended"
    cancelled = "cancelled"
    expired = "expired"


OPEN_STATUSES = frozenset({SubscriptionStatus.pending, SubscriptionStatus.active})
TERMINAL_STATUSES = frozenset({SubscriptionStatus.cancelled, SubscriptionStatus.expired})


class ChangeDirection(str, Enum):
    upgrade = "upgrade"
    downgrade = "downgrade"


# Pending plan change as a tagged variant instead of a loose metadata dict.

class NoPendingChange(BaseModel):
    type: Literal["none"] = "none"


class PendingUpgrade(BaseModel):
    type: Literal["upgrade"] = "upgrade"
    target_plan_id: UUID
    requested_at: datetime


class PendingDowngrade(BaseModel):
    type: Literal["downgrade"] = "downgrade"
    target_plan_id: UUID
    requested_at: datetime


PendingChange = Annotated[
    Union[NoPendingChange, PendingUpgrade, PendingDowngrade],
    Field(discriminator="type"),
]


def pending_change_for(direction: ChangeDirection, target_plan_id: UUID, requested_at: datetime):
    if direction == ChangeDirection.upgrade:
        return PendingUpgrade(target_plan_id=target_plan_id, requested_at=requested_at)
    return PendingDowngrade(target_plan_id=target_plan_id, requested_at=requested_at)


class Subscription(BaseModel):
    id: UUID
    user_id: UUID
    plan_id: UUID
    plan_type: BillingModel
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    amount: Decimal
    currency: str

    start_date: datetime
    end_date: datetime | None = None
    next_billing_date: datetime | None = None
    cancelled_at: datetime | None = None

    trial_start_date: datetime | None = None
    trial_end_date: datetime | None = None
    is_trial: bool = False
    auto_renew: bool = True

    payment_provider: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    payment_method_id: str | None = None

    pending_change: PendingChange = Field(default_factory=NoPendingChange)
    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_pending_change(self) -> bool:
        return not isinstance(self.pending_change, NoPendingChange)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.active

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_in_trial(self, now: datetime) -> bool:
        if not self.is_trial or not self.trial_end_date:
            return False
        return now < self.trial_end_date

    def is_expired(self, now: datetime) -> bool:
        # Lifetime plans never expire
        if self.plan_type == BillingModel.lifetime or not self.end_date:
            return False
        return now > self.end_date

    def days_until_expiration(self, now: datetime) -> int | None:
        if not self.end_date:
            return None
        return math.ceil((self.end_date - now).total_seconds() / 86400)


class SubscriptionOptions(BaseModel):
    """Optional inputs to `SubscriptionService.create`."""
    currency: str | None = None
    payment_provider: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    payment_method_id: str | None = None
    trial_start_date: datetime | None = None
    trial_end_date: datetime | None = None
    is_trial: bool = False
    auto_renew: bool | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    changed_by: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class ActivationData(BaseModel):
    payment_provider: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    payment_method_id: str | None = None
    reason: str = "payment_succeeded"
    changed_by: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class PaymentFailureData(BaseModel):
    payment_provider: str | None = None
    retry_count: int = 0
    # False for status updates (e.g. past_due) that report a charge attempt counted elsewhere.
    new_attempt: bool = True
    reason: str = "payment_failed"
    failure_code: str | None = None
    changed_by: str | None = None


class ExpirySummary(BaseModel):
    processed: int = 0
    failed: int = 0


class PlanOption(BaseModel):
    """A plan as offered to one user: is it theirs, and which way would a change go."""
    plan: Plan
    is_current: bool = False
    change: ChangeDirection | None = None
