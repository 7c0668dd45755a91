from .base import PaymentProvider
from .stripe_provider import StripeProvider

__all__ = ["PaymentProvider", "StripeProvider"]
