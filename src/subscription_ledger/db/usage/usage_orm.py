# subscription_ledger/db/usage/usage_orm.py
from __future__ import annotations
from uuid import UUID
from typing import Optional
from sqlalchemy import String, ForeignKey
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column
from ..base import Base, CreatedAt, UpdatedAt, UuidPk


class UsageProfileORM(Base):
    """
    The plan whose limits are in force for a user.
    Written only on committed transitions (create-active, activate, cancel, expire),
    so a requested-but-unpaid plan change never shows up here.
    """
    __tablename__ = "usage_profiles"

    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    # NULL means "the default plan".
    plan_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("plans.id"), nullable=True)
    subscription_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    updated_at: Mapped[UpdatedAt]


# Owning tables the counters are derived from. Form and submission CRUD live
# elsewhere; only the columns needed for counting are mapped here.

class FormORM(Base):
    __tablename__ = "forms"

    id: Mapped[UuidPk]
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[CreatedAt]


class FormSubmissionORM(Base):
    __tablename__ = "form_submissions"

    id: Mapped[UuidPk]
    form_id: Mapped[UUID] = mapped_column(ForeignKey("forms.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at: Mapped[CreatedAt]


class ExportRecordORM(Base):
    __tablename__ = "export_records"

    id: Mapped[UuidPk]
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    # 'form' | 'submission'
    resource_type: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    created_at: Mapped[CreatedAt]
