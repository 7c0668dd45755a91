import logging
from typing import Any, Callable, List, Optional
from uuid import UUID

from subscription_ledger.db.uow import AsyncUnitOfWork
from subscription_ledger.exceptions import NotFoundError
from subscription_ledger.models.plan import BillingCycle, Plan, PlanCreate, DEFAULT_PLANS

logger = logging.getLogger(__name__)


class PlanCatalog:
    """Read-mostly registry of plans; each call runs in its own unit of work."""

    def __init__(self, uow_factory: Callable[[], AsyncUnitOfWork]):
        self._uow_factory = uow_factory

    async def find_by_id(self, plan_id: UUID) -> Optional[Plan]:
        async with self._uow_factory() as uow:
            return await uow.plans.get(plan_id)

    async def find_by_name(self, name: str) -> Optional[Plan]:
        async with self._uow_factory() as uow:
            return await uow.plans.get_by_name(name)

    async def find_default(self) -> Plan:
        async with self._uow_factory() as uow:
            plan = await uow.plans.get_default()
        if plan is None:
            raise NotFoundError("No default plan configured.")
        return plan

    async def list(self, include_inactive: bool = False) -> List[Plan]:
        async with self._uow_factory() as uow:
            return await uow.plans.list(include_inactive=include_inactive)

    async def create(self, plan: PlanCreate) -> Plan:
        async with self._uow_factory() as uow:
            created = await uow.plans.insert(plan)
        logger.info(f"Created plan '{created.name}' ({created.id})")
        return created

    async def update(self, plan_id: UUID, patch: dict[str, Any]) -> Plan:
        async with self._uow_factory() as uow:
            plan = await uow.plans.update(plan_id, patch)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found.")
        return plan

    async def set_default(self, plan_id: UUID) -> Plan:
        async with self._uow_factory() as uow:
            await uow.lock("plans:default")
            return await uow.plans.set_default(plan_id)

    async def delete(self, plan_id: UUID) -> None:
        async with self._uow_factory() as uow:
            await uow.plans.delete(plan_id)
        logger.info(f"Deleted plan {plan_id}")

    async def seed_defaults(self, plans: List[PlanCreate] | None = None) -> List[Plan]:
        """Inserts the stock plans that are missing by name. Existing ones are left alone."""
        created = []
        async with self._uow_factory() as uow:
            await uow.lock("plans:default")
            for plan in plans if plans is not None else DEFAULT_PLANS:
                if await uow.plans.get_by_name(plan.name) is not None:
                    continue
                if plan.is_default and await uow.plans.get_default() is not None:
                    plan = plan.model_copy(update={"is_default": False})
                created.append(await uow.plans.insert(plan))
        for plan in created:
            logger.info(f"Seeded plan '{plan.name}'")
        return created

    @staticmethod
    def price_for(plan: Plan, billing_cycle: BillingCycle | str):
        return plan.price_for(billing_cycle)
