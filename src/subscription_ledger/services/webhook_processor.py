"""
Inbound provider webhooks.

verify signature (raw bytes) -> parse -> [lock event id, replay check,
resolve subscription, state transition, payment row] -> commit -> notify.

Everything in brackets is one unit of work. The unique webhook_event_id on
the payment ledger is the final gate: if two deliveries of one event race
past the replay check, the second insert fails, its whole unit rolls back
and it is answered as a duplicate.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Tuple
from uuid import UUID

from subscription_ledger.config import BillingConfig
from subscription_ledger.db.uow import AsyncUnitOfWork
from subscription_ledger.exceptions import (
    AlreadyCancelledError, ConflictError, InvalidPayloadError, InvalidSignatureError,
    TransientProviderError, UnknownProviderError,
)
from subscription_ledger.models.payment import PaymentTransaction, TransactionStatus, TransactionType
from subscription_ledger.models.subscription import ActivationData, PaymentFailureData, Subscription, SubscriptionStatus
from subscription_ledger.models.webhook import EventCategory, ProviderEvent, WebhookResult, WebhookStatus
from subscription_ledger.providers.base import PaymentProvider
from subscription_ledger.services.notifications import EventDispatcher
from subscription_ledger.services.subscription_service import SubscriptionService, utcnow

logger = logging.getLogger(__name__)


class WebhookProcessor:
    def __init__(
        self,
        uow_factory: Callable[[], AsyncUnitOfWork],
        subscriptions: SubscriptionService,
        config: BillingConfig,
        providers: Optional[Mapping[str, PaymentProvider]] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._uow_factory = uow_factory
        self._subscriptions = subscriptions
        self._config = config
        self._providers: Dict[str, PaymentProvider] = dict(providers or {})
        self._dispatcher = dispatcher or EventDispatcher()
        self._clock = clock

    def register(self, provider: PaymentProvider) -> None:
        self._providers[provider.name] = provider

    @property
    def providers(self) -> Dict[str, PaymentProvider]:
        return dict(self._providers)

    async def process(self, provider_name: str, headers: Mapping[str, str], raw_body: bytes) -> WebhookResult:
        provider = self._providers.get(provider_name)
        if provider is None:
            raise UnknownProviderError(f"Payment provider '{provider_name}' is not configured.")
        received_at = self._clock()

        try:
            valid = await asyncio.wait_for(
                asyncio.to_thread(provider.verify_signature, headers, raw_body),
                timeout=self._config.webhook_verify_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"Signature verification for '{provider_name}' timed out.") from e
        if not valid:
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={"security_event": True, "provider": provider_name, "body_size": len(raw_body)},
            )
            raise InvalidSignatureError("Webhook signature verification failed.")

        try:
            event = provider.parse_event(raw_body)
        except (ValueError, KeyError) as e:
            logger.error(f"Signed {provider_name} webhook could not be parsed: {e}")
            raise InvalidPayloadError("Webhook payload could not be parsed.") from e

        try:
            return await self._apply(event, received_at)
        except ConflictError as e:
            if "webhook_event_id" not in e.details:
                raise
            logger.info(f"Webhook {event.event_id} lost the race to a concurrent delivery")
            return WebhookResult(status=WebhookStatus.duplicate, event_id=event.event_id, event_type=event.event_type)

    async def _apply(self, event: ProviderEvent, received_at: datetime) -> WebhookResult:
        uow = self._uow_factory()
        async with uow:
            await uow.lock_event(event.provider, event.event_id)
            if await uow.payments.find_by_webhook_event_id(event.event_id) is not None:
                logger.info(f"Webhook {event.event_id} ({event.event_type}) already processed, skipping")
                return WebhookResult(status=WebhookStatus.duplicate, event_id=event.event_id, event_type=event.event_type)

            sub = await self._resolve(uow, event)
            if sub is None:
                logger.warning(
                    f"Webhook {event.event_id} ({event.event_type}) matches no subscription",
                    extra={"provider_subscription_id": event.provider_subscription_id},
                )
                return WebhookResult(status=WebhookStatus.ignored, event_id=event.event_id, event_type=event.event_type)

            tx_type, tx_status = await self._dispatch(uow, event, sub)
            await uow.payments.insert(PaymentTransaction(
                subscription_id=sub.id,
                user_id=sub.user_id,
                provider=event.provider,
                provider_transaction_id=event.provider_transaction_id,
                provider_invoice_id=event.provider_invoice_id,
                provider_subscription_id=event.provider_subscription_id,
                provider_customer_id=event.provider_customer_id,
                transaction_type=tx_type,
                status=tx_status,
                amount=event.amount,
                currency=event.currency or sub.currency,
                billing_reason=event.billing_reason,
                billing_period_start=event.period_start,
                billing_period_end=event.period_end,
                webhook_event_id=event.event_id,
                webhook_received_at=received_at,
                webhook_processed_at=self._clock(),
                failure_code=event.failure_code,
                failure_message=event.failure_message,
                retry_count=event.attempt_count,
                description=event.event_type,
            ))

        self._dispatcher.publish(uow.collect_events())
        status = WebhookStatus.ignored if tx_status == TransactionStatus.ignored else WebhookStatus.processed
        logger.info(
            f"Webhook {event.event_id} ({event.event_type}) -> {status.value}",
            extra={"subscription_id": str(sub.id), "category": event.category.value},
        )
        return WebhookResult(status=status, event_id=event.event_id, event_type=event.event_type, subscription_id=sub.id)

    async def _resolve(self, uow: AsyncUnitOfWork, event: ProviderEvent) -> Optional[Subscription]:
        if event.provider_subscription_id:
            sub = await uow.subscriptions.find_by_provider_subscription_id(event.provider, event.provider_subscription_id)
            if sub is not None:
                return sub
        if event.client_reference_id:
            try:
                return await uow.subscriptions.get(UUID(event.client_reference_id))
            except ValueError:
                logger.warning(f"Malformed client reference '{event.client_reference_id}' on {event.event_id}")
        return None

    async def _dispatch(
        self, uow: AsyncUnitOfWork, event: ProviderEvent, sub: Subscription
    ) -> Tuple[TransactionType, TransactionStatus]:
        changed_by = f"webhook:{event.provider}"
        category = event.category

        if category == EventCategory.checkout_completed:
            if sub.is_terminal:
                return TransactionType.payment, TransactionStatus.ignored
            await self._subscriptions.link_provider(
                sub.id, event.provider, event.provider_subscription_id, event.provider_customer_id,
                changed_by=changed_by, uow=uow,
            )
            if not event.payment_completed:
                return TransactionType.payment, TransactionStatus.ignored
            category = EventCategory.payment_succeeded

        if category == EventCategory.payment_succeeded:
            if sub.is_terminal:
                logger.warning(f"Payment for {sub.status.value} subscription {sub.id} recorded without transition")
                return TransactionType.payment, TransactionStatus.ignored
            try:
                await self._subscriptions.activate(sub.id, ActivationData(
                    payment_provider=event.provider,
                    provider_subscription_id=event.provider_subscription_id,
                    provider_customer_id=event.provider_customer_id,
                    payment_method_id=event.payment_method_id,
                    reason="payment_succeeded",
                    changed_by=changed_by,
                ), uow=uow)
            except ConflictError as e:
                if "open_subscription_id" not in e.details:
                    raise
                # Money collected for a subscription that cannot come back; keep the row for reconciliation.
                logger.error(
                    f"Payment {event.event_id} for subscription {sub.id} recorded without reactivation",
                    extra={"subscription_id": str(sub.id), "open_subscription_id": e.details["open_subscription_id"]},
                )
                return TransactionType.payment, TransactionStatus.ignored
            return TransactionType.payment, TransactionStatus.succeeded

        if category == EventCategory.payment_failed:
            if sub.is_terminal:
                return TransactionType.payment, TransactionStatus.ignored
            await self._subscriptions.handle_payment_failure(sub.id, PaymentFailureData(
                payment_provider=event.provider,
                retry_count=event.attempt_count,
                new_attempt=event.charge_attempt,
                reason="payment_failed",
                failure_code=event.failure_code,
                changed_by=changed_by,
            ), uow=uow)
            return TransactionType.payment, TransactionStatus.failed

        if category == EventCategory.subscription_cancelled:
            if sub.status == SubscriptionStatus.expired:
                return TransactionType.cancellation, TransactionStatus.ignored
            try:
                await self._subscriptions.cancel(sub.id, reason="provider_cancelled", actor=changed_by, uow=uow)
            except AlreadyCancelledError:
                logger.info(f"Subscription {sub.id} already cancelled")
            return TransactionType.cancellation, TransactionStatus.cancelled

        logger.debug(f"No transition for {event.event_type}")
        return TransactionType.payment, TransactionStatus.ignored
