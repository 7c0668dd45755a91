from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4
from pydantic import BaseModel, Field


class HistoryAction(str, Enum):
    created = "created"
    upgrade_requested = "upgrade_requested"
    downgrade_requested = "downgrade_requested"
    activated = "activated"
    payment_failed = "payment_failed"
    cancelled = "cancelled"
    expired = "expired"
    provider_linked = "provider_linked"


class HistoryEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    subscription_id: UUID
    user_id: UUID
    action: HistoryAction
    previous_status: str | None = None
    new_status: str | None = None
    previous_plan_id: UUID | None = None
    new_plan_id: UUID | None = None
    previous_amount: Decimal | None = None
    new_amount: Decimal | None = None
    previous_billing_cycle: str | None = None
    new_billing_cycle: str | None = None
    reason: str | None = None
    changed_by: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
