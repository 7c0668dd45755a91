# subscription_ledger/db/billing/subscription_orm.py
from __future__ import annotations
from uuid import UUID
from datetime import datetime
from typing import List, Optional
from sqlalchemy import String, ForeignKey, DateTime, Boolean, Index, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..base import Base, CreatedAt, JsonBag, Money, UpdatedAt, UuidPk
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .plan_orm import PlanORM
    from .history_orm import SubscriptionHistoryORM
    from .payment_orm import PaymentTransactionORM


class SubscriptionORM(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # Storage backstop for "one pending/active subscription per user".
        # The service serializes creation per user before it ever gets here.
        Index(
            "uq_subscriptions_open_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'active')"),
        ),
    )

    id: Mapped[UuidPk]
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    plan_id: Mapped[UUID] = mapped_column(ForeignKey("plans.id"), nullable=False, index=True)

    # 'recurring' | 'lifetime'
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # 'pending' | 'active' | 'suspended' | 'cancelled' | 'expired'
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    # 'monthly' | 'yearly'
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    amount: Mapped[Money]
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    trial_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    payment_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Holds {"pendingPlanChange": {...}} plus caller-supplied extras.
    metadata_: Mapped[JsonBag] = mapped_column("metadata")

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    plan: Mapped["PlanORM"] = relationship(lazy="joined")
    history: Mapped[List["SubscriptionHistoryORM"]] = relationship(back_populates="subscription")
    payments: Mapped[List["PaymentTransactionORM"]] = relationship(back_populates="subscription")
