# subscription_ledger/db/billing/history_orm.py
from __future__ import annotations
from uuid import UUID
from decimal import Decimal
from typing import Optional
from sqlalchemy import String, ForeignKey, Numeric, Text, BigInteger, Identity
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..base import Base, CreatedAt, JsonBag, UuidPk
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .subscription_orm import SubscriptionORM


class SubscriptionHistoryORM(Base):
    """Append-only. Nothing in the package updates or deletes these rows."""
    __tablename__ = "subscription_history"

    id: Mapped[UuidPk]
    # Insertion order; created_at alone ties inside one transaction.
    seq: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False, index=True)
    subscription_id: Mapped[UUID] = mapped_column(ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    previous_plan_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    new_plan_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    previous_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    new_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    previous_billing_cycle: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_billing_cycle: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # 'user:<id>', 'admin:<id>', 'system', 'webhook:<provider>'
    changed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[JsonBag] = mapped_column("metadata")

    created_at: Mapped[CreatedAt]

    subscription: Mapped["SubscriptionORM"] = relationship(back_populates="history")
