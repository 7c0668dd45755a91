from __future__ import annotations
import logging
from typing import Optional
from uuid import UUID
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession
from sqlalchemy import text

from subscription_ledger.exceptions import DatabaseError
from subscription_ledger.repositories.pg_repositoryPlan import PlanRepository
from subscription_ledger.repositories.pg_repositorySubscription import SubscriptionRepository
from subscription_ledger.repositories.pg_repositoryHistory import HistoryRepository
from subscription_ledger.repositories.pg_repositoryPayment import PaymentRepository
from subscription_ledger.repositories.pg_repositoryUsage import UsageRepository

logger = logging.getLogger(__name__)


class AsyncUnitOfWork:
    """
    One transaction, one session, every repository bound to it.
    Commits on clean exit, rolls back on any exception. Domain events recorded
    during the unit are handed out by `collect_events()` and are only meant to
    be published once the `async with` block has exited cleanly.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory
        self.session: Optional[AsyncSession] = None
        self._events: list = []

    async def __aenter__(self):
        self.session = self._sf()
        await self.session.__aenter__()
        self.plans = PlanRepository(self.session)
        self.subscriptions = SubscriptionRepository(self.session)
        self.history = HistoryRepository(self.session)
        self.payments = PaymentRepository(self.session)
        self.usage = UsageRepository(self.session)
        self._events = []
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if exc:
                await self.session.rollback()
                self._events = []
            else:
                try:
                    await self.session.commit()
                except SQLAlchemyError as e:
                    await self.session.rollback()
                    self._events = []
                    raise DatabaseError(f"Commit failed: {e}") from e
        finally:
            await self.session.__aexit__(exc_type, exc, tb)

    async def lock(self, key: str | None):
        """Transactional advisory lock, released on commit or rollback."""
        if not key:
            return
        await self.session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": key})

    async def lock_subscription(self, subscription_id: UUID | str):
        await self.lock(f"subscription:{subscription_id}")

    async def lock_user(self, user_id: UUID | str):
        await self.lock(f"user:{user_id}")

    async def lock_event(self, provider: str, event_id: str):
        await self.lock(f"webhook:{provider}:{event_id}")

    def record_event(self, event) -> None:
        self._events.append(event)

    def collect_events(self) -> list:
        events, self._events = self._events, []
        return events
