"""
Subscription state machine.

The only code that mutates a subscription. Every mutating call:

* runs in one unit of work, its own or the caller's (the webhook pipeline
  passes one in so the transition and the payment row commit together);
* takes the per-subscription advisory lock (per-user for `create`) and reads
  the row FOR UPDATE before looking at its status;
* writes history best-effort, in a savepoint;
* publishes domain events only after the unit of work has committed.

    pending    --activate-->              active
    pending    --payment failed, n<max--> pending
    *          --payment failed, n>=max-> suspended
    active     --request_plan_change-->   pending (pending change set)
    active     --renewal failed, n<max--> active
    suspended  --activate-->              active
    open/susp. --cancel-->                cancelled
    active     --end_date passed-->       expired
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, List, Optional
from uuid import UUID, uuid4

from subscription_ledger.config import BillingConfig
from subscription_ledger.db.uow import AsyncUnitOfWork
from subscription_ledger.exceptions import (
    AlreadyCancelledError, ConflictError, DatabaseError, InvalidTransitionError,
    InvariantViolationError, NotFoundError,
)
from subscription_ledger.models.events import (
    PaymentFailed, SubscriptionActivated, SubscriptionCancelled, SubscriptionExpired,
)
from subscription_ledger.models.history import HistoryAction, HistoryEntry
from subscription_ledger.models.plan import BillingCycle, BillingModel, Plan
from subscription_ledger.models.subscription import (
    ActivationData, ChangeDirection, ExpirySummary, NoPendingChange, PaymentFailureData, PlanOption,
    Subscription, SubscriptionOptions, SubscriptionStatus, pending_change_for,
)
from subscription_ledger.services.notifications import EventDispatcher

logger = logging.getLogger(__name__)

RETRY_COUNT_KEY = "paymentRetryCount"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionService:
    def __init__(
        self,
        uow_factory: Callable[[], AsyncUnitOfWork],
        config: BillingConfig,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._uow_factory = uow_factory
        self._config = config
        self._dispatcher = dispatcher or EventDispatcher()
        self._clock = clock

    @asynccontextmanager
    async def _transaction(self, uow: Optional[AsyncUnitOfWork] = None) -> AsyncIterator[AsyncUnitOfWork]:
        """Joins the caller's unit of work, or opens one and publishes its events after commit."""
        if uow is not None:
            yield uow
            return
        own = self._uow_factory()
        async with own:
            yield own
        self._dispatcher.publish(own.collect_events())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: UUID,
        plan_id: UUID,
        billing_cycle: BillingCycle | str = BillingCycle.monthly,
        opts: Optional[SubscriptionOptions] = None,
        *,
        uow: Optional[AsyncUnitOfWork] = None,
    ) -> Subscription:
        opts = opts or SubscriptionOptions()
        cycle = BillingCycle(billing_cycle)

        async with self._transaction(uow) as tx:
            await tx.lock_user(user_id)
            existing = await tx.subscriptions.find_open_for_user(user_id)
            if existing:
                raise ConflictError(
                    "User already has a pending or active subscription.",
                    {"user_id": str(user_id), "subscription_id": str(existing[0].id), "status": existing[0].status.value},
                )
            plan = await tx.plans.get(plan_id)
            if plan is None or not plan.is_active:
                raise NotFoundError(f"Plan {plan_id} not found.")

            now = self._clock()
            amount = plan.price_for(cycle)
            is_free = amount <= 0
            lifetime = plan.billing_model == BillingModel.lifetime
            status = SubscriptionStatus.active if is_free else SubscriptionStatus.pending
            # Nothing to bill for lifetime or free plans.
            period_end = None if (lifetime or is_free) else now + self._period(cycle)
            auto_renew = False if (lifetime or is_free) else (opts.auto_renew if opts.auto_renew is not None else True)

            sub = Subscription(
                id=uuid4(),
                user_id=user_id,
                plan_id=plan.id,
                plan_type=plan.billing_model,
                status=status,
                billing_cycle=cycle,
                amount=amount,
                currency=opts.currency or plan.currency or self._config.default_currency,
                start_date=now,
                end_date=period_end,
                next_billing_date=period_end,
                trial_start_date=opts.trial_start_date,
                trial_end_date=opts.trial_end_date,
                is_trial=opts.is_trial,
                auto_renew=auto_renew,
                payment_provider=opts.payment_provider,
                provider_subscription_id=opts.provider_subscription_id,
                provider_customer_id=opts.provider_customer_id,
                payment_method_id=opts.payment_method_id,
                metadata=dict(opts.metadata),
            )
            sub = await tx.subscriptions.insert(sub)

            await self._record(tx, HistoryEntry(
                subscription_id=sub.id,
                user_id=user_id,
                action=HistoryAction.created,
                new_status=status.value,
                new_plan_id=plan.id,
                new_amount=amount,
                new_billing_cycle=cycle.value,
                reason="subscription_created",
                changed_by=opts.changed_by or f"user:{user_id}",
                ip_address=opts.ip_address,
                user_agent=opts.user_agent,
            ))

            if status == SubscriptionStatus.active:
                await tx.usage.set_governing_plan(user_id, plan.id, sub.id)
                tx.record_event(SubscriptionActivated(
                    subscription_id=sub.id, user_id=user_id, occurred_at=now, plan_id=plan.id,
                ))

        logger.info(
            f"Created subscription {sub.id} ({sub.status.value}) on plan '{plan.name}'",
            extra={"user_id": str(user_id), "subscription_id": str(sub.id)},
        )
        return sub

    async def request_plan_change(
        self,
        subscription_id: UUID,
        target_plan_id: UUID,
        direction: ChangeDirection | str | None = None,
        *,
        changed_by: Optional[str] = None,
        uow: Optional[AsyncUnitOfWork] = None,
    ) -> Subscription:
        """
        Records the intent only. Plan, amount and limits stay as they are until
        `activate` confirms payment for the target plan.
        """
        async with self._transaction(uow) as tx:
            sub = await self._locked(tx, subscription_id)
            if sub.is_terminal or sub.status == SubscriptionStatus.suspended:
                raise InvalidTransitionError(
                    f"Cannot change plan of a {sub.status.value} subscription.",
                    {"subscription_id": str(sub.id), "status": sub.status.value},
                )
            target = await tx.plans.get(target_plan_id)
            if target is None or not target.is_active:
                raise NotFoundError(f"Plan {target_plan_id} not found.")
            if target.id == sub.plan_id:
                raise InvalidTransitionError(
                    "Subscription is already on this plan.",
                    {"subscription_id": str(sub.id), "plan_id": str(target.id)},
                )

            if direction is None:
                current = await tx.plans.get(sub.plan_id)
                direction = self._direction(current, target, sub.billing_cycle)
            direction = ChangeDirection(direction)

            now = self._clock()
            updated = await tx.subscriptions.update(sub.model_copy(update={
                "status": SubscriptionStatus.pending,
                "pending_change": pending_change_for(direction, target.id, now),
            }))

            action = HistoryAction.upgrade_requested if direction == ChangeDirection.upgrade else HistoryAction.downgrade_requested
            await self._record(tx, HistoryEntry(
                subscription_id=sub.id,
                user_id=sub.user_id,
                action=action,
                previous_status=sub.status.value,
                new_status=SubscriptionStatus.pending.value,
                previous_plan_id=sub.plan_id,
                new_plan_id=target.id,
                previous_amount=sub.amount,
                new_amount=None,
                previous_billing_cycle=sub.billing_cycle.value,
                new_billing_cycle=sub.billing_cycle.value,
                reason=f"{direction.value}_requested",
                changed_by=changed_by or f"user:{sub.user_id}",
                metadata={"targetPlanId": str(target.id), "requestedAt": now.isoformat()},
            ))

        logger.info(
            f"Plan {direction.value} requested for subscription {sub.id}: {sub.plan_id} -> {target.id}",
            extra={"subscription_id": str(sub.id)},
        )
        return updated

    async def activate(
        self,
        subscription_id: UUID,
        data: Optional[ActivationData] = None,
        *,
        uow: Optional[AsyncUnitOfWork] = None,
    ) -> Subscription:
        """
        Payment confirmed. The only way into `active`. On an active subscription
        with nothing pending it only clears the payment retry count.
        """
        data = data or ActivationData()
        async with self._transaction(uow) as tx:
            sub = await self._locked(tx, subscription_id)
            if sub.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot activate a {sub.status.value} subscription.",
                    {"subscription_id": str(sub.id), "status": sub.status.value},
                )
            if sub.is_active and not sub.has_pending_change:
                if RETRY_COUNT_KEY not in sub.metadata:
                    logger.info(f"Subscription {sub.id} already active, nothing to do")
                    return sub
                # Renewal recovered: the next cycle starts counting from zero.
                metadata = dict(sub.metadata)
                metadata.pop(RETRY_COUNT_KEY)
                logger.info(f"Subscription {sub.id} renewal recovered, retry count cleared")
                return await tx.subscriptions.update(sub.model_copy(update={"metadata": metadata}))

            if sub.status == SubscriptionStatus.suspended:
                await tx.lock_user(sub.user_id)
                others = [s for s in await tx.subscriptions.find_open_for_user(sub.user_id) if s.id != sub.id]
                if others:
                    logger.error(
                        "Suspended subscription cannot be reactivated next to another open one",
                        extra={"subscription_id": str(sub.id), "open_subscription_id": str(others[0].id)},
                    )
                    raise ConflictError(
                        "User already has a pending or active subscription.",
                        {
                            "user_id": str(sub.user_id),
                            "subscription_id": str(sub.id),
                            "open_subscription_id": str(others[0].id),
                        },
                    )

            now = self._clock()
            updates: dict = {"status": SubscriptionStatus.active, "pending_change": NoPendingChange()}
            plan_id, plan_type, amount = sub.plan_id, sub.plan_type, sub.amount
            applied = None

            if sub.has_pending_change:
                applied = sub.pending_change
                target = await tx.plans.get(applied.target_plan_id)
                if target is None:
                    logger.error(
                        "Pending plan change references a missing plan",
                        extra={"subscription_id": str(sub.id), "target_plan_id": str(applied.target_plan_id)},
                    )
                    raise InvariantViolationError(
                        f"Pending plan change of {sub.id} references missing plan {applied.target_plan_id}.",
                        {"subscription_id": str(sub.id), "target_plan_id": str(applied.target_plan_id)},
                    )
                plan_id, plan_type = target.id, target.billing_model
                amount = target.price_for(sub.billing_cycle)
                updates.update(plan_id=plan_id, plan_type=plan_type, amount=amount)

            if plan_type == BillingModel.lifetime:
                updates.update(end_date=None, next_billing_date=None, auto_renew=False)
            elif sub.end_date is None or sub.end_date <= now:
                period_end = now + self._period(sub.billing_cycle)
                updates.update(end_date=period_end, next_billing_date=period_end)

            metadata = dict(sub.metadata)
            metadata.pop(RETRY_COUNT_KEY, None)
            updates["metadata"] = metadata
            for field in ("payment_provider", "provider_subscription_id", "provider_customer_id", "payment_method_id"):
                value = getattr(data, field)
                if value:
                    updates[field] = value

            updated = await tx.subscriptions.update(sub.model_copy(update=updates))
            await tx.usage.set_governing_plan(sub.user_id, plan_id, sub.id)

            await self._record(tx, HistoryEntry(
                subscription_id=sub.id,
                user_id=sub.user_id,
                action=HistoryAction.activated,
                previous_status=sub.status.value,
                new_status=SubscriptionStatus.active.value,
                previous_plan_id=sub.plan_id,
                new_plan_id=plan_id,
                previous_amount=sub.amount,
                new_amount=amount,
                previous_billing_cycle=sub.billing_cycle.value,
                new_billing_cycle=sub.billing_cycle.value,
                reason=data.reason,
                changed_by=data.changed_by or "system",
                ip_address=data.ip_address,
                user_agent=data.user_agent,
                metadata={"appliedPlanChange": applied.type} if applied else {},
            ))
            tx.record_event(SubscriptionActivated(
                subscription_id=sub.id, user_id=sub.user_id, occurred_at=now, plan_id=plan_id,
            ))

        logger.info(
            f"Activated subscription {sub.id} on plan {plan_id}",
            extra={"subscription_id": str(sub.id), "previous_status": sub.status.value},
        )
        return updated

    async def handle_payment_failure(
        self,
        subscription_id: UUID,
        data: Optional[PaymentFailureData] = None,
        *,
        uow: Optional[AsyncUnitOfWork] = None,
    ) -> Subscription:
        data = data or PaymentFailureData()
        async with self._transaction(uow) as tx:
            sub = await self._locked(tx, subscription_id)
            if sub.is_terminal:
                raise InvalidTransitionError(
                    f"Payment failure on a {sub.status.value} subscription.",
                    {"subscription_id": str(sub.id), "status": sub.status.value},
                )

            previous_retries = int(sub.metadata.get(RETRY_COUNT_KEY, 0))
            if data.retry_count > 0:
                # The provider's attempt count is authoritative.
                retry_count = data.retry_count
            elif data.new_attempt:
                retry_count = previous_retries + 1
            else:
                # Status-only signal for an attempt already counted.
                retry_count = max(previous_retries, 1)
            if retry_count >= self._config.max_payment_retries:
                new_status = SubscriptionStatus.suspended
            else:
                # pending stays pending (never paid); active stays active (renewal retry)
                new_status = sub.status

            metadata = dict(sub.metadata)
            metadata[RETRY_COUNT_KEY] = retry_count
            updated = await tx.subscriptions.update(sub.model_copy(update={"status": new_status, "metadata": metadata}))

            if new_status == SubscriptionStatus.suspended and sub.status != SubscriptionStatus.suspended:
                await tx.usage.reset_to_default(sub.user_id, sub.id)

            await self._record(tx, HistoryEntry(
                subscription_id=sub.id,
                user_id=sub.user_id,
                action=HistoryAction.payment_failed,
                previous_status=sub.status.value,
                new_status=new_status.value,
                previous_plan_id=sub.plan_id,
                new_plan_id=sub.plan_id,
                previous_amount=sub.amount,
                new_amount=sub.amount,
                reason=data.reason,
                changed_by=data.changed_by or "system",
                metadata={"retryCount": retry_count, "failureReason": data.reason, "failureCode": data.failure_code},
            ))
            tx.record_event(PaymentFailed(
                subscription_id=sub.id, user_id=sub.user_id, occurred_at=self._clock(), new_status=new_status.value,
            ))

        logger.info(
            f"Payment failure #{retry_count} on subscription {sub.id}: {sub.status.value} -> {new_status.value}",
            extra={"subscription_id": str(sub.id)},
        )
        return updated

    async def cancel(
        self,
        subscription_id: UUID,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        *,
        uow: Optional[AsyncUnitOfWork] = None,
    ) -> Subscription:
        """Raises AlreadyCancelledError (carrying the stored subscription) on a second call."""
        async with self._transaction(uow) as tx:
            sub = await self._locked(tx, subscription_id)
            if sub.status == SubscriptionStatus.cancelled:
                raise AlreadyCancelledError(sub)
            if sub.status == SubscriptionStatus.expired:
                raise InvalidTransitionError(
                    "Cannot cancel an expired subscription.",
                    {"subscription_id": str(sub.id), "status": sub.status.value},
                )

            now = self._clock()
            updated = await tx.subscriptions.update(sub.model_copy(update={
                "status": SubscriptionStatus.cancelled,
                "cancelled_at": now,
                "auto_renew": False,
                "pending_change": NoPendingChange(),
            }))
            await tx.usage.reset_to_default(sub.user_id, sub.id)

            await self._record(tx, HistoryEntry(
                subscription_id=sub.id,
                user_id=sub.user_id,
                action=HistoryAction.cancelled,
                previous_status=sub.status.value,
                new_status=SubscriptionStatus.cancelled.value,
                previous_plan_id=sub.plan_id,
                new_plan_id=sub.plan_id,
                previous_amount=sub.amount,
                new_amount=sub.amount,
                reason=reason or "cancelled",
                changed_by=actor or "system",
            ))
            tx.record_event(SubscriptionCancelled(
                subscription_id=sub.id, user_id=sub.user_id, occurred_at=now, reason=reason,
            ))

        logger.info(f"Cancelled subscription {sub.id}", extra={"subscription_id": str(sub.id), "actor": actor})
        return updated

    async def expire_due(self) -> ExpirySummary:
        """
        One sweep over active, non-renewing subscriptions past their end date.
        Each one is expired in its own unit of work; a failure is logged and
        counted and the sweep moves on.
        """
        now = self._clock()
        async with self._uow_factory() as uow:
            due = await uow.subscriptions.find_expirable(now)

        summary = ExpirySummary()
        for subscription_id in due:
            try:
                if await self._expire_one(subscription_id, now):
                    summary.processed += 1
            except Exception:
                summary.failed += 1
                logger.exception(f"Failed to expire subscription {subscription_id}")
        logger.info(f"Expiry sweep done: {summary.processed} expired, {summary.failed} failed")
        return summary

    async def _expire_one(self, subscription_id: UUID, now: datetime) -> bool:
        async with self._transaction() as tx:
            sub = await self._locked(tx, subscription_id)
            # Re-checked under the lock: a renewal or cancel may have won the race.
            if not (sub.is_active and not sub.auto_renew and sub.end_date is not None and sub.end_date < now):
                logger.debug(f"Subscription {sub.id} no longer due for expiry")
                return False

            await tx.subscriptions.update(sub.model_copy(update={
                "status": SubscriptionStatus.expired,
                "pending_change": NoPendingChange(),
            }))
            await tx.usage.reset_to_default(sub.user_id, sub.id)
            await self._record(tx, HistoryEntry(
                subscription_id=sub.id,
                user_id=sub.user_id,
                action=HistoryAction.expired,
                previous_status=sub.status.value,
                new_status=SubscriptionStatus.expired.value,
                previous_plan_id=sub.plan_id,
                new_plan_id=sub.plan_id,
                previous_amount=sub.amount,
                new_amount=sub.amount,
                reason="subscription_period_ended",
                changed_by="system",
            ))
            tx.record_event(SubscriptionExpired(subscription_id=sub.id, user_id=sub.user_id, occurred_at=now))
        return True

    async def link_provider(
        self,
        subscription_id: UUID,
        provider: str,
        provider_subscription_id: Optional[str] = None,
        provider_customer_id: Optional[str] = None,
        *,
        changed_by: Optional[str] = None,
        uow: Optional[AsyncUnitOfWork] = None,
    ) -> Subscription:
        """Stores the provider-side ids once checkout completes. Status is untouched."""
        async with self._transaction(uow) as tx:
            sub = await self._locked(tx, subscription_id)
            if sub.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot link a {sub.status.value} subscription.",
                    {"subscription_id": str(sub.id), "status": sub.status.value},
                )
            updates = {"payment_provider": provider}
            if provider_subscription_id:
                updates["provider_subscription_id"] = provider_subscription_id
            if provider_customer_id:
                updates["provider_customer_id"] = provider_customer_id
            if all(getattr(sub, k) == v for k, v in updates.items()):
                return sub

            updated = await tx.subscriptions.update(sub.model_copy(update=updates))
            await self._record(tx, HistoryEntry(
                subscription_id=sub.id,
                user_id=sub.user_id,
                action=HistoryAction.provider_linked,
                previous_status=sub.status.value,
                new_status=sub.status.value,
                reason="provider_linked",
                changed_by=changed_by or f"webhook:{provider}",
                metadata={
                    "provider": provider,
                    "providerSubscriptionId": provider_subscription_id,
                    "providerCustomerId": provider_customer_id,
                },
            ))
        return updated

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get(self, subscription_id: UUID) -> Subscription:
        async with self._uow_factory() as uow:
            sub = await uow.subscriptions.get(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found.")
        return sub

    async def get_current(self, user_id: UUID) -> Optional[Subscription]:
        """The active subscription, else the most recent pending one."""
        async with self._uow_factory() as uow:
            sub = await uow.subscriptions.find_active_for_user(user_id)
            if sub is None:
                sub = await uow.subscriptions.find_latest_for_user(user_id, SubscriptionStatus.pending)
        return sub

    async def history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> List[HistoryEntry]:
        async with self._uow_factory() as uow:
            return await uow.history.list_for_user(user_id, limit=limit, offset=offset)

    async def subscription_history(self, subscription_id: UUID) -> List[HistoryEntry]:
        async with self._uow_factory() as uow:
            return await uow.history.list_for_subscription(subscription_id)

    async def can_change_to(self, user_id: UUID, plan_id: UUID) -> bool:
        async with self._uow_factory() as uow:
            current = await uow.subscriptions.find_active_for_user(user_id)
            target = await uow.plans.get(plan_id)
        if current is None or target is None or not target.is_active:
            return False
        return target.id != current.plan_id

    async def available_plans(self, user_id: UUID) -> List[PlanOption]:
        async with self._uow_factory() as uow:
            plans = await uow.plans.list()
            current = await uow.subscriptions.find_active_for_user(user_id)
            current_plan = await uow.plans.get(current.plan_id) if current else None

        options = []
        for plan in plans:
            if current_plan is None:
                options.append(PlanOption(plan=plan))
            elif plan.id == current_plan.id:
                options.append(PlanOption(plan=plan, is_current=True))
            else:
                options.append(PlanOption(plan=plan, change=self._direction(current_plan, plan, current.billing_cycle)))
        return options

    # ------------------------------------------------------------------

    async def _locked(self, tx: AsyncUnitOfWork, subscription_id: UUID) -> Subscription:
        await tx.lock_subscription(subscription_id)
        sub = await tx.subscriptions.get_for_update(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found.")
        return sub

    async def _record(self, tx: AsyncUnitOfWork, entry: HistoryEntry) -> None:
        try:
            await tx.history.append(entry)
        except DatabaseError:
            logger.error(
                f"History write '{entry.action.value}' failed; transition kept",
                extra={"subscription_id": str(entry.subscription_id), "action": entry.action.value},
                exc_info=True,
            )

    def _period(self, cycle: BillingCycle) -> timedelta:
        if cycle == BillingCycle.yearly:
            return timedelta(days=self._config.yearly_period_days)
        return timedelta(days=self._config.monthly_period_days)

    @staticmethod
    def _direction(current: Optional[Plan], target: Plan, cycle: BillingCycle) -> ChangeDirection:
        if current is None:
            return ChangeDirection.upgrade
        if target.price_for(cycle) > current.price_for(cycle):
            return ChangeDirection.upgrade
        return ChangeDirection.downgrade
