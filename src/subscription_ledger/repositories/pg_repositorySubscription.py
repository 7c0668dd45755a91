# subscription_ledger/repositories/pg_repositorySubscription.py

import logging
from datetime import datetime
from enum import Enum
from uuid import UUID
from typing import List, Optional

from pydantic import TypeAdapter
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_ledger.db import SubscriptionORM
from subscription_ledger.exceptions import ConflictError, DatabaseError, NotFoundError
from subscription_ledger.models.subscription import (
    Subscription, SubscriptionStatus, PendingChange, NoPendingChange, OPEN_STATUSES,
)

logger = logging.getLogger(__name__)

PENDING_CHANGE_KEY = "pendingPlanChange"

_pending_adapter = TypeAdapter(PendingChange)

# Columns copied 1:1 between the model and the row.
_COLUMNS = (
    "user_id", "plan_id", "plan_type", "status", "billing_cycle", "amount", "currency",
    "start_date", "end_date", "next_billing_date", "cancelled_at",
    "trial_start_date", "trial_end_date", "is_trial", "auto_renew",
    "payment_provider", "provider_subscription_id", "provider_customer_id", "payment_method_id",
)


def _to_model(orm: SubscriptionORM) -> Subscription:
    metadata = dict(orm.metadata_ or {})
    raw_pending = metadata.pop(PENDING_CHANGE_KEY, None)
    if raw_pending:
        pending = _pending_adapter.validate_python({
            "type": raw_pending.get("type"),
            "target_plan_id": raw_pending.get("targetPlanId"),
            "requested_at": raw_pending.get("requestedAt"),
        })
    else:
        pending = NoPendingChange()
    data = {name: getattr(orm, name) for name in _COLUMNS}
    return Subscription(
        id=orm.id,
        pending_change=pending,
        metadata=metadata,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
        **data,
    )


def _row_values(sub: Subscription) -> dict:
    values = {}
    for name in _COLUMNS:
        value = getattr(sub, name)
        # str-enums go to String columns by value
        values[name] = value.value if isinstance(value, Enum) else value
    metadata = dict(sub.metadata)
    metadata.pop(PENDING_CHANGE_KEY, None)
    if not isinstance(sub.pending_change, NoPendingChange):
        metadata[PENDING_CHANGE_KEY] = {
            "type": sub.pending_change.type,
            "targetPlanId": str(sub.pending_change.target_plan_id),
            "requestedAt": sub.pending_change.requested_at.isoformat(),
        }
    values["metadata_"] = metadata
    return values


class SubscriptionRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, subscription_id: UUID) -> Optional[Subscription]:
        orm = await self._session.get(SubscriptionORM, subscription_id)
        return _to_model(orm) if orm else None

    async def get_for_update(self, subscription_id: UUID) -> Optional[Subscription]:
        """Reads the row under SELECT ... FOR UPDATE; the lock lives until the unit of work ends."""
        stmt = (
            select(SubscriptionORM)
            .where(SubscriptionORM.id == subscription_id)
            .with_for_update(of=SubscriptionORM)
            .execution_options(populate_existing=True)
        )
        orm = (await self._session.execute(stmt)).unique().scalar_one_or_none()
        return _to_model(orm) if orm else None

    async def find_open_for_user(self, user_id: UUID) -> List[Subscription]:
        stmt = (
            select(SubscriptionORM)
            .where(
                SubscriptionORM.user_id == user_id,
                SubscriptionORM.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(SubscriptionORM.created_at.desc())
        )
        res = await self._session.execute(stmt)
        return [_to_model(orm) for orm in res.unique().scalars().all()]

    async def find_active_for_user(self, user_id: UUID) -> Optional[Subscription]:
        return await self._first_for_user(user_id, SubscriptionStatus.active)

    async def find_latest_for_user(
        self, user_id: UUID, status: SubscriptionStatus | None = None
    ) -> Optional[Subscription]:
        return await self._first_for_user(user_id, status)

    async def find_by_provider_subscription_id(
        self, provider: str, provider_subscription_id: str
    ) -> Optional[Subscription]:
        stmt = (
            select(SubscriptionORM)
            .where(
                SubscriptionORM.payment_provider == provider,
                SubscriptionORM.provider_subscription_id == provider_subscription_id,
            )
            .order_by(SubscriptionORM.created_at.desc())
            .limit(1)
        )
        orm = (await self._session.execute(stmt)).unique().scalar_one_or_none()
        return _to_model(orm) if orm else None

    async def list_for_user(self, user_id: UUID) -> List[Subscription]:
        stmt = (
            select(SubscriptionORM)
            .where(SubscriptionORM.user_id == user_id)
            .order_by(SubscriptionORM.created_at.desc())
        )
        res = await self._session.execute(stmt)
        return [_to_model(orm) for orm in res.unique().scalars().all()]

    async def find_expirable(self, now: datetime) -> List[UUID]:
        """Ids only: the sweep re-reads every row under its own lock."""
        stmt = select(SubscriptionORM.id).where(
            SubscriptionORM.status == SubscriptionStatus.active.value,
            SubscriptionORM.end_date.is_not(None),
            SubscriptionORM.end_date < now,
            SubscriptionORM.auto_renew.is_(False),
        )
        res = await self._session.execute(stmt)
        return list(res.scalars().all())

    async def count_for_plan(self, plan_id: UUID) -> int:
        stmt = select(func.count()).select_from(SubscriptionORM).where(SubscriptionORM.plan_id == plan_id)
        return int(await self._session.scalar(stmt) or 0)

    async def insert(self, sub: Subscription) -> Subscription:
        orm = SubscriptionORM(id=sub.id, **_row_values(sub))
        try:
            self._session.add(orm)
            await self._session.flush()
            await self._session.refresh(orm)
        except IntegrityError as e:
            raise ConflictError(
                "User already has a pending or active subscription.",
                {"user_id": str(sub.user_id)},
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to insert subscription for user {sub.user_id}: {e}") from e
        logger.debug(f"Inserted subscription {orm.id} ({orm.status}) for user {orm.user_id}")
        return _to_model(orm)

    async def update(self, sub: Subscription) -> Subscription:
        orm = await self._session.get(SubscriptionORM, sub.id)
        if orm is None:
            raise NotFoundError(f"Subscription {sub.id} not found.")
        for name, value in _row_values(sub).items():
            setattr(orm, name, value)
        try:
            await self._session.flush()
            await self._session.refresh(orm)
        except IntegrityError as e:
            raise ConflictError(
                "User already has a pending or active subscription.",
                {"user_id": str(sub.user_id)},
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to update subscription {sub.id}: {e}") from e
        return _to_model(orm)

    async def _first_for_user(self, user_id: UUID, status: SubscriptionStatus | None) -> Optional[Subscription]:
        stmt = select(SubscriptionORM).where(SubscriptionORM.user_id == user_id)
        if status is not None:
            stmt = stmt.where(SubscriptionORM.status == status.value)
        stmt = stmt.order_by(SubscriptionORM.created_at.desc()).limit(1)
        orm = (await self._session.execute(stmt)).unique().scalar_one_or_none()
        return _to_model(orm) if orm else None
