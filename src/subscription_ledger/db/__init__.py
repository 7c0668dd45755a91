# subscription_ledger/db/__init__.py

from .base import Base

from .billing.plan_orm import PlanORM
from .billing.subscription_orm import SubscriptionORM
from .billing.history_orm import SubscriptionHistoryORM
from .billing.payment_orm import PaymentTransactionORM

from .usage.usage_orm import UsageProfileORM, FormORM, FormSubmissionORM, ExportRecordORM


__all__ = [
    "Base",
    "PlanORM",
    "SubscriptionORM",
    "SubscriptionHistoryORM",
    "PaymentTransactionORM",
    "UsageProfileORM",
    "FormORM",
    "FormSubmissionORM",
    "ExportRecordORM",
]
