from abc import ABC, abstractmethod
from typing import Mapping, Optional

from subscription_ledger.models.plan import Plan
from subscription_ledger.models.subscription import Subscription
from subscription_ledger.models.webhook import CheckoutSession, ProviderEvent


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over a plain mapping."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class PaymentProvider(ABC):
    """What the ledger needs from a payment provider, nothing more."""

    name: str

    @abstractmethod
    def verify_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """Checks the signature over the raw, unparsed body."""

    @abstractmethod
    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        """Only called after `verify_signature` returned True."""

    @abstractmethod
    async def create_checkout_session(
        self,
        subscription: Subscription,
        plan: Plan,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        ...
