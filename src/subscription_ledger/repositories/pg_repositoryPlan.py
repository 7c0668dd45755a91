# subscription_ledger/repositories/pg_repositoryPlan.py

import logging
from uuid import UUID
from typing import Any, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_ledger.db import PlanORM, SubscriptionORM, UsageProfileORM
from subscription_ledger.exceptions import ConflictError, DatabaseError, InvariantViolationError, NotFoundError
from subscription_ledger.models.plan import Plan, PlanCreate, PLAN_EDITABLE_FIELDS

logger = logging.getLogger(__name__)


class PlanRepository:
    """
    Plans (account types): limits, pricing, billing model.
    Works inside the session of the unit of work that owns it.
    """
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, plan_id: UUID) -> Optional[Plan]:
        orm = await self._session.get(PlanORM, plan_id)
        return Plan.model_validate(orm) if orm else None

    async def get_by_name(self, name: str) -> Optional[Plan]:
        res = await self._session.execute(select(PlanORM).where(PlanORM.name == name))
        orm = res.scalar_one_or_none()
        return Plan.model_validate(orm) if orm else None

    async def get_default(self) -> Optional[Plan]:
        stmt = select(PlanORM).where(PlanORM.is_default.is_(True), PlanORM.is_active.is_(True)).limit(1)
        orm = (await self._session.execute(stmt)).scalar_one_or_none()
        return Plan.model_validate(orm) if orm else None

    async def list(self, include_inactive: bool = False) -> List[Plan]:
        stmt = select(PlanORM).order_by(PlanORM.price_monthly, PlanORM.name)
        if not include_inactive:
            stmt = stmt.where(PlanORM.is_active.is_(True))
        res = await self._session.execute(stmt)
        return [Plan.model_validate(orm) for orm in res.scalars().all()]

    async def insert(self, plan: PlanCreate) -> Plan:
        data = plan.model_dump()
        data["billing_model"] = plan.billing_model.value
        try:
            if plan.is_default:
                await self._clear_default()
            orm = PlanORM(**data)
            self._session.add(orm)
            await self._session.flush()
            await self._session.refresh(orm)
            return Plan.model_validate(orm)
        except IntegrityError as e:
            raise ConflictError(f"Plan '{plan.name}' already exists.") from e
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to create plan '{plan.name}': {e}") from e

    async def update(self, plan_id: UUID, patch: dict[str, Any]) -> Optional[Plan]:
        unknown = set(patch) - PLAN_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable on a plan: {sorted(unknown)}")
        if not patch:
            return await self.get(plan_id)
        try:
            stmt = (
                update(PlanORM)
                .where(PlanORM.id == plan_id)
                .values(**patch, updated_at=func.now())
                .returning(PlanORM)
                .execution_options(synchronize_session="fetch")
            )
            orm = (await self._session.execute(stmt)).scalar_one_or_none()
            if orm is None:
                return None
            await self._session.refresh(orm)
            return Plan.model_validate(orm)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to update plan {plan_id}: {e}") from e

    async def set_default(self, plan_id: UUID) -> Plan:
        orm = await self._session.get(PlanORM, plan_id)
        if orm is None:
            raise NotFoundError(f"Plan {plan_id} not found.")
        if not orm.is_active:
            raise InvariantViolationError(f"Archived plan '{orm.name}' cannot be the default.")
        try:
            await self._clear_default()
            orm.is_default = True
            await self._session.flush()
            await self._session.refresh(orm)
            logger.info(f"Plan '{orm.name}' is now the default plan")
            return Plan.model_validate(orm)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to set default plan {plan_id}: {e}") from e

    async def is_referenced(self, plan_id: UUID) -> bool:
        subs = await self._session.scalar(
            select(func.count()).select_from(SubscriptionORM).where(SubscriptionORM.plan_id == plan_id)
        )
        profiles = await self._session.scalar(
            select(func.count()).select_from(UsageProfileORM).where(UsageProfileORM.plan_id == plan_id)
        )
        return bool(subs) or bool(profiles)

    async def delete(self, plan_id: UUID) -> None:
        orm = await self._session.get(PlanORM, plan_id)
        if orm is None:
            raise NotFoundError(f"Plan {plan_id} not found.")
        if orm.is_default:
            raise InvariantViolationError("Cannot delete the default plan.", {"plan_id": str(plan_id)})
        if await self.is_referenced(plan_id):
            raise InvariantViolationError(
                f"Cannot delete plan '{orm.name}': it is referenced by subscriptions.",
                {"plan_id": str(plan_id)},
            )
        try:
            await self._session.execute(delete(PlanORM).where(PlanORM.id == plan_id))
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to delete plan {plan_id}: {e}") from e

    async def _clear_default(self) -> None:
        await self._session.execute(
            update(PlanORM)
            .where(PlanORM.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )
        # The partial unique index is checked per statement.
        await self._session.flush()
