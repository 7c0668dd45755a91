# subscription_ledger/repositories/pg_repositoryHistory.py

import logging
from uuid import UUID
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_ledger.db import SubscriptionHistoryORM
from subscription_ledger.exceptions import DatabaseError
from subscription_ledger.models.history import HistoryEntry

logger = logging.getLogger(__name__)


def _to_model(orm: SubscriptionHistoryORM) -> HistoryEntry:
    return HistoryEntry(
        id=orm.id,
        subscription_id=orm.subscription_id,
        user_id=orm.user_id,
        action=orm.action,
        previous_status=orm.previous_status,
        new_status=orm.new_status,
        previous_plan_id=orm.previous_plan_id,
        new_plan_id=orm.new_plan_id,
        previous_amount=orm.previous_amount,
        new_amount=orm.new_amount,
        previous_billing_cycle=orm.previous_billing_cycle,
        new_billing_cycle=orm.new_billing_cycle,
        reason=orm.reason,
        changed_by=orm.changed_by,
        ip_address=orm.ip_address,
        user_agent=orm.user_agent,
        metadata=dict(orm.metadata_ or {}),
        created_at=orm.created_at,
    )


class HistoryRepository:
    """Append-only audit trail: rows are inserted and read, never updated or deleted."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(self, entry: HistoryEntry) -> None:
        """
        Writes the row inside a SAVEPOINT. If it fails only the savepoint is
        rolled back, the surrounding transition stays intact.
        """
        data = entry.model_dump(exclude={"metadata", "created_at"})
        data["action"] = entry.action.value
        orm = SubscriptionHistoryORM(**data, metadata_=entry.metadata)
        try:
            async with self._session.begin_nested():
                self._session.add(orm)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to write history '{entry.action.value}' for {entry.subscription_id}: {e}") from e

    async def list_for_subscription(self, subscription_id: UUID) -> List[HistoryEntry]:
        stmt = (
            select(SubscriptionHistoryORM)
            .where(SubscriptionHistoryORM.subscription_id == subscription_id)
            .order_by(SubscriptionHistoryORM.seq)
        )
        res = await self._session.execute(stmt)
        return [_to_model(orm) for orm in res.scalars().all()]

    async def list_for_user(self, user_id: UUID, limit: int = 50, offset: int = 0) -> List[HistoryEntry]:
        """Newest first."""
        stmt = (
            select(SubscriptionHistoryORM)
            .where(SubscriptionHistoryORM.user_id == user_id)
            .order_by(SubscriptionHistoryORM.seq.desc())
            .limit(limit)
            .offset(offset)
        )
        res = await self._session.execute(stmt)
        return [_to_model(orm) for orm in res.scalars().all()]
