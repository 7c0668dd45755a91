# File: src/subscription_ledger/__init__.py

from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from .client import LedgerClient
from .config import get_settings, LedgerConfig, PostgresConfig, StripeConfig, BillingConfig
from .db.uow import AsyncUnitOfWork
from .providers import PaymentProvider, StripeProvider
from .services import (
    CheckoutService, EventDispatcher, LoggingNotifier, PlanCatalog, SubscriptionService,
    UsageCounters, WebhookProcessor,
)

from .exceptions import *


def create_ledger_client(config: Optional[LedgerConfig] = None) -> LedgerClient:
    """
    Builds and wires a LedgerClient.

    :param config: the whole configuration in one object.
                   When omitted it is read from the environment / .env.
    """
    if config is None:
        config = get_settings().to_ledger_config()

    engine = create_async_engine(
        config.postgres.get_pg_dsn(),
        pool_size=config.postgres.pool_size,
        max_overflow=config.postgres.max_overflow,
        pool_timeout=config.postgres.pool_timeout,
        pool_recycle=config.postgres.pool_recycle,
        pool_pre_ping=config.postgres.pool_pre_ping,
        connect_args={
            "server_settings": {
                "application_name": config.postgres.application_name
            }
        }
    )
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)

    def uow_factory() -> AsyncUnitOfWork:
        return AsyncUnitOfWork(session_factory)

    dispatcher = EventDispatcher()
    dispatcher.subscribe(LoggingNotifier())

    providers: dict[str, PaymentProvider] = {}
    if config.stripe.webhook_secret or config.stripe.api_key:
        providers["stripe"] = StripeProvider(config.stripe)

    subscriptions = SubscriptionService(uow_factory, config.billing, dispatcher)
    client = LedgerClient(
        plans=PlanCatalog(uow_factory),
        usage=UsageCounters(uow_factory, config.billing),
        subscriptions=subscriptions,
        webhooks=WebhookProcessor(uow_factory, subscriptions, config.billing, providers, dispatcher),
        checkout=CheckoutService(uow_factory, subscriptions, providers),
        dispatcher=dispatcher,
        engine=engine,
        session_factory=session_factory,
    )
    return client


__all__ = [
    "LedgerClient", "create_ledger_client",
    "LedgerConfig", "PostgresConfig", "StripeConfig", "BillingConfig",
    "AsyncUnitOfWork", "PaymentProvider", "StripeProvider",
    "CheckoutService", "EventDispatcher", "LoggingNotifier", "PlanCatalog",
    "SubscriptionService", "UsageCounters", "WebhookProcessor",
    "LedgerError", "DatabaseError", "NotFoundError", "ConflictError", "AlreadyCancelledError",
    "InvalidTransitionError", "InvalidSignatureError", "InvalidPayloadError", "TransientProviderError",
    "InvariantViolationError", "UnknownProviderError", "ProviderError",
]
