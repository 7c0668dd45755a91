import logging
from typing import Callable, Optional
from uuid import UUID

from subscription_ledger.config import BillingConfig
from subscription_ledger.db.uow import AsyncUnitOfWork
from subscription_ledger.exceptions import NotFoundError
from subscription_ledger.models.plan import Plan
from subscription_ledger.models.usage import (
    LimitAction, LimitCheck, RESOURCE_ACTIONS, UsageSummary, UsageMeter, FormSubmissionUsage, ExportAllowance,
)

logger = logging.getLogger(__name__)


def _percentage(current: int, limit: int) -> int:
    if limit <= 0:
        return 100
    return min(100, round(current * 100 / limit))


class UsageCounters:
    """
    Answers "may this user do X right now". Limits come from the governing plan,
    i.e. the plan the user has actually paid for; a requested plan change is
    never looked at. Reads are unlocked and may be momentarily stale.
    """

    def __init__(self, uow_factory: Callable[[], AsyncUnitOfWork], config: BillingConfig):
        self._uow_factory = uow_factory
        self._config = config

    async def governing_plan(self, user_id: UUID) -> Plan:
        async with self._uow_factory() as uow:
            return await self._governing_plan(uow, user_id)

    async def check_limit(self, user_id: UUID, action: LimitAction | str, resource_id: Optional[UUID] = None) -> LimitCheck:
        action = LimitAction(action)
        if action in RESOURCE_ACTIONS and resource_id is None:
            raise ValueError(f"'{action.value}' needs a resource id")
        if self._config.plans_disabled:
            return LimitCheck.unlimited()

        async with self._uow_factory() as uow:
            plan = await self._governing_plan(uow, user_id)
            if action == LimitAction.create_form:
                limit = plan.max_forms
                current = await uow.usage.count_forms(user_id)
            elif action == LimitAction.create_submission:
                limit = plan.max_submissions_per_form
                current = await uow.usage.count_submissions(resource_id)
            elif action == LimitAction.export_form:
                limit = plan.max_exports_per_form if plan.can_export_forms else 0
                current = await uow.usage.count_exports("form", resource_id)
            else:
                limit = plan.max_exports_per_submission if plan.can_export_submissions else 0
                current = await uow.usage.count_exports("submission", resource_id)

        check = LimitCheck.evaluate(limit, current)
        if not check.allowed:
            logger.info(
                f"Limit reached for {action.value}",
                extra={"user_id": str(user_id), "plan": plan.name, "limit": limit, "current": current},
            )
        return check

    async def usage_summary(self, user_id: UUID) -> UsageSummary:
        async with self._uow_factory() as uow:
            plan = await self._governing_plan(uow, user_id)
            form_count = await uow.usage.count_forms(user_id)
            per_form = await uow.usage.submission_counts_by_form(user_id)

        if self._config.plans_disabled:
            # Same shape, nothing enforced.
            plan = plan.model_copy(update={
                "max_forms": LimitCheck.unlimited().limit,
                "max_submissions_per_form": LimitCheck.unlimited().limit,
            })

        submissions = [
            FormSubmissionUsage(
                form_id=form_id,
                form_title=title,
                current=count,
                limit=plan.max_submissions_per_form,
                remaining=max(0, plan.max_submissions_per_form - count),
            )
            for form_id, title, count in per_form
        ]
        return UsageSummary(
            user_id=user_id,
            plan_id=plan.id,
            plan_name=plan.name,
            forms=UsageMeter(
                current=form_count,
                limit=plan.max_forms,
                remaining=max(0, plan.max_forms - form_count),
                percentage=_percentage(form_count, plan.max_forms),
            ),
            submissions_per_form=submissions,
            total_submissions=sum(s.current for s in submissions),
            exports=ExportAllowance(
                forms_allowed=plan.can_export_forms,
                submissions_allowed=plan.can_export_submissions,
                max_exports_per_form=plan.max_exports_per_form,
                max_exports_per_submission=plan.max_exports_per_submission,
            ),
        )

    async def _governing_plan(self, uow: AsyncUnitOfWork, user_id: UUID) -> Plan:
        plan_id = await uow.usage.get_governing_plan_id(user_id)
        plan = await uow.plans.get(plan_id) if plan_id else None
        if plan is None:
            plan = await uow.plans.get_default()
        if plan is None:
            raise NotFoundError("No default plan configured.")
        return plan
