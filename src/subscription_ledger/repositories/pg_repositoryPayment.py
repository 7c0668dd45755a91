# subscription_ledger/repositories/pg_repositoryPayment.py

import logging
from uuid import UUID
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_ledger.db import PaymentTransactionORM
from subscription_ledger.exceptions import ConflictError, DatabaseError
from subscription_ledger.models.payment import PaymentTransaction

logger = logging.getLogger(__name__)

_FIELDS = (
    "id", "subscription_id", "user_id", "provider", "provider_transaction_id", "provider_invoice_id",
    "provider_subscription_id", "provider_customer_id", "amount", "currency", "billing_reason",
    "billing_period_start", "billing_period_end", "webhook_event_id", "webhook_received_at",
    "webhook_processed_at", "failure_code", "failure_message", "retry_count", "description", "created_at",
)


def _to_model(orm: PaymentTransactionORM) -> PaymentTransaction:
    data = {name: getattr(orm, name) for name in _FIELDS}
    return PaymentTransaction(
        transaction_type=orm.transaction_type,
        status=orm.status,
        metadata=dict(orm.metadata_ or {}),
        **data,
    )


class PaymentRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_by_webhook_event_id(self, webhook_event_id: str) -> Optional[PaymentTransaction]:
        stmt = select(PaymentTransactionORM).where(PaymentTransactionORM.webhook_event_id == webhook_event_id)
        orm = (await self._session.execute(stmt)).scalar_one_or_none()
        return _to_model(orm) if orm else None

    async def insert(self, tx: PaymentTransaction) -> PaymentTransaction:
        """A second row with the same webhook_event_id raises ConflictError."""
        data = {name: getattr(tx, name) for name in _FIELDS if name != "created_at"}
        orm = PaymentTransactionORM(
            **data,
            transaction_type=tx.transaction_type.value,
            status=tx.status.value,
            metadata_=tx.metadata,
        )
        try:
            self._session.add(orm)
            await self._session.flush()
            await self._session.refresh(orm)
        except IntegrityError as e:
            raise ConflictError(
                f"Webhook event {tx.webhook_event_id} already recorded.",
                {"webhook_event_id": tx.webhook_event_id},
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to record payment transaction: {e}") from e
        return _to_model(orm)

    async def list_for_subscription(self, subscription_id: UUID) -> List[PaymentTransaction]:
        stmt = (
            select(PaymentTransactionORM)
            .where(PaymentTransactionORM.subscription_id == subscription_id)
            .order_by(PaymentTransactionORM.created_at)
        )
        res = await self._session.execute(stmt)
        return [_to_model(orm) for orm in res.scalars().all()]

    async def list_for_user(self, user_id: UUID, limit: int = 50, offset: int = 0) -> List[PaymentTransaction]:
        stmt = (
            select(PaymentTransactionORM)
            .where(PaymentTransactionORM.user_id == user_id)
            .order_by(PaymentTransactionORM.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        res = await self._session.execute(stmt)
        return [_to_model(orm) for orm in res.scalars().all()]
