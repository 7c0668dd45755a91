from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID
from pydantic import BaseModel, Field


class EventCategory(str, Enum):
    payment_succeeded = "payment_succeeded"
    payment_failed = "payment_failed"
    subscription_cancelled = "subscription_cancelled"
    checkout_completed = "checkout_completed"
    ignored = "ignored"


class ProviderEvent(BaseModel):
    """Provider-neutral view of a verified webhook event."""
    provider: str
    event_id: str
    event_type: str
    category: EventCategory
    created_at: datetime | None = None

    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    # Our subscription id, echoed back by the provider (checkout client_reference_id / metadata)
    client_reference_id: str | None = None

    provider_transaction_id: str | None = None
    provider_invoice_id: str | None = None
    payment_method_id: str | None = None
    amount: Decimal = Decimal("0")
    currency: str | None = None
    attempt_count: int = 0
    # False for subscription status updates, which echo an invoice attempt rather than make one.
    charge_attempt: bool = True
    # Checkout finished with the money collected (one-off payments have no invoice event).
    payment_completed: bool = False
    failure_code: str | None = None
    failure_message: str | None = None
    billing_reason: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class WebhookStatus(str, Enum):
    processed = "processed"
    duplicate = "duplicate"
    ignored = "ignored"


class WebhookResult(BaseModel):
    status: WebhookStatus
    event_id: str
    event_type: str
    subscription_id: UUID | None = None


class CheckoutSession(BaseModel):
    session_id: str
    url: str | None = None


class CheckoutResult(BaseModel):
    subscription_id: UUID
    session_id: str | None = None
    url: str | None = None
    status: str
