# subscription_ledger/db/billing/plan_orm.py
from __future__ import annotations
from sqlalchemy import String, Boolean, Integer, Text, Index, text
from sqlalchemy.orm import Mapped, mapped_column
from ..base import Base, CreatedAt, JsonBag, Money, UpdatedAt, UuidPk


class PlanORM(Base):
    __tablename__ = "plans"
    __table_args__ = (
        # At most one default plan; the repository keeps it at exactly one.
        Index("uq_plans_single_default", "is_default", unique=True, postgresql_where=text("is_default")),
    )

    id: Mapped[UuidPk]
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    max_forms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_submissions_per_form: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    can_export_forms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_export_submissions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_exports_per_form: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_exports_per_submission: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Free-form extras, e.g. {"custom_branding": true}
    features: Mapped[JsonBag]

    # 'recurring' | 'lifetime'
    billing_model: Mapped[str] = mapped_column(String(20), nullable=False, default="recurring")
    price_monthly: Mapped[Money]
    price_yearly: Mapped[Money]
    price_lifetime: Mapped[Money]
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Archived plans stay referenced by old subscriptions.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]
