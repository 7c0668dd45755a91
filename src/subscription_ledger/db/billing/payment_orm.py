# subscription_ledger/db/billing/payment_orm.py
from __future__ import annotations
from uuid import UUID
from datetime import datetime
from typing import Optional
from sqlalchemy import String, ForeignKey, Integer, Text, DateTime
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..base import Base, CreatedAt, JsonBag, Money, UpdatedAt, UuidPk
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .subscription_orm import SubscriptionORM


class PaymentTransactionORM(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[UuidPk]
    subscription_id: Mapped[UUID] = mapped_column(ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    provider_invoice_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # 'payment' | 'refund' | 'cancellation'
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False, default="payment")
    # 'succeeded' | 'failed' | 'refunded' | 'cancelled' | 'ignored'
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    amount: Mapped[Money]
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    billing_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    billing_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    billing_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # The idempotency key. A duplicate insert is how concurrent redeliveries lose.
    webhook_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    webhook_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provider-internal, kept for support only.
    failure_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[JsonBag] = mapped_column("metadata")

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    subscription: Mapped["SubscriptionORM"] = relationship(back_populates="payments")
