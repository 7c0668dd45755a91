from .notifications import EventDispatcher, LoggingNotifier
from .plan_catalog import PlanCatalog
from .usage import UsageCounters
from .subscription_service import SubscriptionService
from .webhook_processor import WebhookProcessor
from .checkout import CheckoutService

__all__ = [
    "EventDispatcher",
    "LoggingNotifier",
    "PlanCatalog",
    "UsageCounters",
    "SubscriptionService",
    "WebhookProcessor",
    "CheckoutService",
]
