from .pg_repositoryPlan import PlanRepository
from .pg_repositorySubscription import SubscriptionRepository
from .pg_repositoryHistory import HistoryRepository
from .pg_repositoryPayment import PaymentRepository
from .pg_repositoryUsage import UsageRepository

__all__ = [
    "PlanRepository",
    "SubscriptionRepository",
    "HistoryRepository",
    "PaymentRepository",
    "UsageRepository",
]
