from .plan import Plan, PlanCreate, BillingModel, BillingCycle, DEFAULT_PLANS, PLAN_EDITABLE_FIELDS
from .subscription import (
    Subscription, SubscriptionStatus, SubscriptionOptions, ActivationData, PaymentFailureData,
    ChangeDirection, NoPendingChange, PendingUpgrade, PendingDowngrade, ExpirySummary, PlanOption,
    OPEN_STATUSES, TERMINAL_STATUSES,
)
from .history import HistoryEntry, HistoryAction
from .payment import PaymentTransaction, TransactionStatus, TransactionType
from .usage import LimitAction, LimitCheck, UsageSummary
from .webhook import ProviderEvent, EventCategory, WebhookResult, WebhookStatus, CheckoutSession, CheckoutResult
from .events import DomainEvent, SubscriptionActivated, SubscriptionCancelled, SubscriptionExpired, PaymentFailed

__all__ = [
    "Plan", "PlanCreate", "BillingModel", "BillingCycle", "DEFAULT_PLANS", "PLAN_EDITABLE_FIELDS",
    "Subscription", "SubscriptionStatus", "SubscriptionOptions", "ActivationData", "PaymentFailureData",
    "ChangeDirection", "NoPendingChange", "PendingUpgrade", "PendingDowngrade", "ExpirySummary", "PlanOption",
    "OPEN_STATUSES", "TERMINAL_STATUSES",
    "HistoryEntry", "HistoryAction",
    "PaymentTransaction", "TransactionStatus", "TransactionType",
    "LimitAction", "LimitCheck", "UsageSummary",
    "ProviderEvent", "EventCategory", "WebhookResult", "WebhookStatus", "CheckoutSession", "CheckoutResult",
    "DomainEvent", "SubscriptionActivated", "SubscriptionCancelled", "SubscriptionExpired", "PaymentFailed",
]
