import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from subscription_ledger.db.base import Base, get_session
from subscription_ledger.exceptions import DatabaseError
from subscription_ledger.services import (
    CheckoutService, EventDispatcher, PlanCatalog, SubscriptionService, UsageCounters, WebhookProcessor,
)

logger = logging.getLogger(__name__)


class LedgerClient:
    """
    Single access point: plan catalog, limit checks, the subscription state
    machine, webhook ingestion and checkout, all sharing one engine.
    """

    def __init__(
        self,
        plans: PlanCatalog,
        usage: UsageCounters,
        subscriptions: SubscriptionService,
        webhooks: WebhookProcessor,
        checkout: CheckoutService,
        dispatcher: EventDispatcher,
        engine: Optional[AsyncEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.plans = plans
        self.usage = usage
        self.subscriptions = subscriptions
        self.webhooks = webhooks
        self.checkout = checkout
        self.dispatcher = dispatcher
        self._engine = engine
        self._session_factory = session_factory

    async def check_connection(self) -> None:
        """Runs SELECT 1. Raises DatabaseError when PostgreSQL is unreachable."""
        logger.debug("Checking PostgreSQL connection...")
        async with get_session(self._session_factory) as session:
            try:
                await session.execute(text("SELECT 1"))
                logger.debug("PostgreSQL connection successful.")
            except (SQLAlchemyError, OSError) as e:
                logger.error(f"PostgreSQL connection failed: {e}")
                raise DatabaseError("Failed to connect to the database.") from e

    async def check_connections(self) -> dict[str, str]:
        statuses = {}
        try:
            await self.check_connection()
            statuses["postgres"] = "ok"
        except DatabaseError as e:
            statuses["postgres"] = f"failed: {e}"
        statuses["providers"] = ", ".join(sorted(self.webhooks.providers)) or "none"
        return statuses

    async def create_schema(self) -> None:
        """Creates missing tables; existing ones are left as they are."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def aclose(self) -> None:
        await self.dispatcher.drain()
        if self._engine is not None:
            await self._engine.dispose()
