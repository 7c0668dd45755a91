# File: subscription_ledger/models/plan.py

from __future__ import annotations
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4
from typing import Any
from pydantic import BaseModel, Field


class BillingModel(str, Enum):
    recurring = "recurring"
    lifetime = "lifetime"


class BillingCycle(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


class PlanBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str
    description: str | None = None

    max_forms: int = Field(0, ge=0)
    max_submissions_per_form: int = Field(0, ge=0)
    can_export_forms: bool = False
    can_export_submissions: bool = False
    max_exports_per_form: int = Field(0, ge=0)
    max_exports_per_submission: int = Field(0, ge=0)
    features: dict[str, Any] = Field(default_factory=dict)

    billing_model: BillingModel = BillingModel.recurring
    price_monthly: Decimal = Decimal("0")
    price_yearly: Decimal = Decimal("0")
    price_lifetime: Decimal = Decimal("0")
    currency: str = "USD"

    is_active: bool = True
    is_default: bool = False


class PlanCreate(PlanBase):
    id: UUID = Field(default_factory=uuid4)


class Plan(PlanBase):
    id: UUID

    model_config = {"from_attributes": True}

    def price_for(self, billing_cycle: BillingCycle | str) -> Decimal:
        """Lifetime plans always charge the lifetime price, whatever the cycle."""
        if self.billing_model == BillingModel.lifetime:
            return self.price_lifetime
        if BillingCycle(billing_cycle) == BillingCycle.yearly:
            return self.price_yearly
        return self.price_monthly

    def is_free(self, billing_cycle: BillingCycle | str = BillingCycle.monthly) -> bool:
        return self.price_for(billing_cycle) <= 0


# Fields an admin may edit on a plan that subscriptions already reference.
PLAN_EDITABLE_FIELDS = frozenset({
    "display_name", "description",
    "max_forms", "max_submissions_per_form",
    "can_export_forms", "can_export_submissions",
    "max_exports_per_form", "max_exports_per_submission",
    "features", "price_monthly", "price_yearly", "price_lifetime",
    "currency", "is_active",
})


DEFAULT_PLANS: list[PlanCreate] = [
    PlanCreate(
        name="free", display_name="Free", description="Get started with basic forms",
        max_forms=3, max_submissions_per_form=100,
        can_export_forms=False, can_export_submissions=False,
        is_default=True,
    ),
    PlanCreate(
        name="basic", display_name="Basic",
        max_forms=10, max_submissions_per_form=1000,
        can_export_forms=True, can_export_submissions=True,
        max_exports_per_form=10, max_exports_per_submission=10,
        price_monthly=Decimal("9.99"), price_yearly=Decimal("99.00"),
    ),
    PlanCreate(
        name="pro", display_name="Pro",
        max_forms=50, max_submissions_per_form=10000,
        can_export_forms=True, can_export_submissions=True,
        max_exports_per_form=100, max_exports_per_submission=100,
        price_monthly=Decimal("29.99"), price_yearly=Decimal("299.00"),
    ),
    PlanCreate(
        name="lifetime", display_name="Lifetime",
        max_forms=50, max_submissions_per_form=10000,
        can_export_forms=True, can_export_submissions=True,
        max_exports_per_form=100, max_exports_per_submission=100,
        billing_model=BillingModel.lifetime, price_lifetime=Decimal("499.00"),
    ),
]
