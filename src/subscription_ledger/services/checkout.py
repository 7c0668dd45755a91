import logging
from typing import Callable, Mapping, Optional
from uuid import UUID

from subscription_ledger.db.uow import AsyncUnitOfWork
from subscription_ledger.exceptions import ConflictError, NotFoundError, UnknownProviderError
from subscription_ledger.models.plan import BillingCycle
from subscription_ledger.models.subscription import SubscriptionOptions, SubscriptionStatus
from subscription_ledger.models.webhook import CheckoutResult
from subscription_ledger.providers.base import PaymentProvider
from subscription_ledger.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Starts a hosted checkout for a paid plan. The pending subscription is
    created (or reused) first, its id travels to the provider as the client
    reference and comes back on the checkout/invoice webhooks.
    """

    def __init__(
        self,
        uow_factory: Callable[[], AsyncUnitOfWork],
        subscriptions: SubscriptionService,
        providers: Mapping[str, PaymentProvider],
    ):
        self._uow_factory = uow_factory
        self._subscriptions = subscriptions
        self._providers = providers

    async def start_checkout(
        self,
        user_id: UUID,
        plan_id: UUID,
        billing_cycle: BillingCycle | str = BillingCycle.monthly,
        provider: str = "stripe",
        customer_email: Optional[str] = None,
    ) -> CheckoutResult:
        adapter = self._providers.get(provider)
        if adapter is None:
            raise UnknownProviderError(f"Payment provider '{provider}' is not configured.")
        cycle = BillingCycle(billing_cycle)

        async with self._uow_factory() as uow:
            plan = await uow.plans.get(plan_id)
            open_subs = await uow.subscriptions.find_open_for_user(user_id)
        if plan is None or not plan.is_active:
            raise NotFoundError(f"Plan {plan_id} not found.")

        current = open_subs[0] if open_subs else None
        if current is None:
            subscription = await self._subscriptions.create(
                user_id, plan.id, cycle, SubscriptionOptions(payment_provider=provider, changed_by=f"user:{user_id}"),
            )
        elif current.status == SubscriptionStatus.pending and current.plan_id == plan.id and not current.has_pending_change:
            subscription = current
        else:
            raise ConflictError(
                "User already has an open subscription; request a plan change instead.",
                {"subscription_id": str(current.id), "status": current.status.value},
            )

        if subscription.status == SubscriptionStatus.active:
            # Free plan: activated on creation, nothing to pay.
            return CheckoutResult(subscription_id=subscription.id, status=subscription.status.value)

        session = await adapter.create_checkout_session(subscription, plan, customer_email=customer_email)
        logger.info(
            f"Checkout started for subscription {subscription.id}",
            extra={"user_id": str(user_id), "provider": provider, "session_id": session.session_id},
        )
        return CheckoutResult(
            subscription_id=subscription.id,
            session_id=session.session_id,
            url=session.url,
            status=subscription.status.value,
        )
