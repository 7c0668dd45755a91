# subscription_ledger/repositories/pg_repositoryUsage.py

import logging
from uuid import UUID
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_ledger.db import UsageProfileORM, FormORM, FormSubmissionORM, ExportRecordORM
from subscription_ledger.exceptions import DatabaseError

logger = logging.getLogger(__name__)


class UsageRepository:
    """
    Governing plan per user plus the raw counts limits are checked against.
    Counts are read straight from the owning tables without locking.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_governing_plan_id(self, user_id: UUID) -> Optional[UUID]:
        """None means the user is on the default plan."""
        stmt = select(UsageProfileORM.plan_id).where(UsageProfileORM.user_id == user_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def set_governing_plan(
        self, user_id: UUID, plan_id: Optional[UUID], subscription_id: Optional[UUID]
    ) -> None:
        stmt = pg_insert(UsageProfileORM).values(
            user_id=user_id, plan_id=plan_id, subscription_id=subscription_id
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsageProfileORM.user_id],
            set_={"plan_id": plan_id, "subscription_id": subscription_id, "updated_at": func.now()},
        )
        try:
            await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to sync governing plan for user {user_id}: {e}") from e
        logger.debug(f"Governing plan for user {user_id} -> {plan_id or 'default'}")

    async def reset_to_default(self, user_id: UUID, subscription_id: Optional[UUID] = None) -> None:
        """
        Puts the user back on the default plan. With `subscription_id`, only when that
        subscription is the one currently governing, so closing an old suspended
        subscription never downgrades a newer one.
        """
        if subscription_id is None:
            await self.set_governing_plan(user_id, None, None)
            return
        stmt = (
            update(UsageProfileORM)
            .where(UsageProfileORM.user_id == user_id, UsageProfileORM.subscription_id == subscription_id)
            .values(plan_id=None, subscription_id=None, updated_at=func.now())
        )
        try:
            await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to reset governing plan for user {user_id}: {e}") from e

    async def count_forms(self, user_id: UUID) -> int:
        stmt = select(func.count()).select_from(FormORM).where(FormORM.user_id == user_id)
        return int(await self._session.scalar(stmt) or 0)

    async def count_submissions(self, form_id: UUID) -> int:
        stmt = select(func.count()).select_from(FormSubmissionORM).where(FormSubmissionORM.form_id == form_id)
        return int(await self._session.scalar(stmt) or 0)

    async def count_exports(self, resource_type: str, resource_id: UUID) -> int:
        stmt = (
            select(func.count())
            .select_from(ExportRecordORM)
            .where(ExportRecordORM.resource_type == resource_type, ExportRecordORM.resource_id == resource_id)
        )
        return int(await self._session.scalar(stmt) or 0)

    async def submission_counts_by_form(self, user_id: UUID) -> List[Tuple[UUID, str, int]]:
        """(form_id, title, submissions) for every form the user owns."""
        stmt = (
            select(FormORM.id, FormORM.title, func.count(FormSubmissionORM.id))
            .outerjoin(FormSubmissionORM, FormSubmissionORM.form_id == FormORM.id)
            .where(FormORM.user_id == user_id)
            .group_by(FormORM.id, FormORM.title)
            .order_by(FormORM.created_at)
        )
        res = await self._session.execute(stmt)
        return [(row[0], row[1], int(row[2])) for row in res.all()]
