from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4
from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    payment = "payment"
    refund = "refund"
    cancellation = "cancellation"


class TransactionStatus(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    refunded = "refunded"
    cancelled = "cancelled"
    # Event acknowledged and recorded, no state change (e.g. unhandled type).
    ignored = "ignored"


class PaymentTransaction(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    subscription_id: UUID
    user_id: UUID
    provider: str
    provider_transaction_id: str | None = None
    provider_invoice_id: str | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    transaction_type: TransactionType = TransactionType.payment
    status: TransactionStatus
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    billing_reason: str | None = None
    billing_period_start: datetime | None = None
    billing_period_end: datetime | None = None
    webhook_event_id: str
    webhook_received_at: datetime | None = None
    webhook_processed_at: datetime | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    retry_count: int = 0
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
