import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

import stripe

from subscription_ledger.config import StripeConfig
from subscription_ledger.exceptions import ProviderError, TransientProviderError
from subscription_ledger.models.plan import BillingCycle, BillingModel, Plan
from subscription_ledger.models.subscription import Subscription
from subscription_ledger.models.webhook import CheckoutSession, EventCategory, ProviderEvent
from subscription_ledger.providers.base import PaymentProvider, header

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

_STATIC_CATEGORIES = {
    "invoice.payment_succeeded": EventCategory.payment_succeeded,
    "invoice.paid": EventCategory.payment_succeeded,
    "invoice.payment_failed": EventCategory.payment_failed,
    "customer.subscription.deleted": EventCategory.subscription_cancelled,
    "checkout.session.completed": EventCategory.checkout_completed,
}

# customer.subscription.updated, keyed by the Stripe subscription status
_SUBSCRIPTION_STATUS_CATEGORIES = {
    "active": EventCategory.payment_succeeded,
    "past_due": EventCategory.payment_failed,
    "unpaid": EventCategory.payment_failed,
    "canceled": EventCategory.subscription_cancelled,
}

# Currencies Stripe bills without minor units.
_ZERO_DECIMAL = {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}


def _from_minor_units(value: Any, currency: Optional[str]) -> Decimal:
    if value is None:
        return Decimal("0")
    amount = Decimal(str(value))
    if currency and currency.lower() in _ZERO_DECIMAL:
        return amount
    return amount / 100


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in _ZERO_DECIMAL:
        return int(amount)
    return int((amount * 100).to_integral_value())


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(self, config: StripeConfig):
        self._config = config

    def verify_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        secret = self._config.webhook_secret
        sig_header = header(headers, SIGNATURE_HEADER)
        if not secret:
            logger.error("Stripe webhook secret is not configured")
            return False
        if not sig_header:
            return False
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            return False
        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, secret, self._config.signature_tolerance)
        except stripe.SignatureVerificationError as e:
            logger.debug(f"Stripe signature rejected: {e}")
            return False
        return True

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        data = json.loads(raw_body)
        event_type = data.get("type", "")
        obj = (data.get("data") or {}).get("object") or {}

        if event_type == "customer.subscription.updated":
            category = _SUBSCRIPTION_STATUS_CATEGORIES.get(obj.get("status"), EventCategory.ignored)
        else:
            category = _STATIC_CATEGORIES.get(event_type, EventCategory.ignored)

        event = ProviderEvent(
            provider=self.name,
            event_id=data["id"],
            event_type=event_type,
            category=category,
            created_at=_ts(data.get("created")),
            raw=data,
        )
        if event_type.startswith("invoice."):
            self._fill_from_invoice(event, obj)
        elif event_type.startswith("customer.subscription."):
            self._fill_from_subscription(event, obj)
        elif event_type.startswith("checkout.session."):
            self._fill_from_checkout(event, obj)
        return event

    @staticmethod
    def _fill_from_invoice(event: ProviderEvent, invoice: dict) -> None:
        currency = invoice.get("currency")
        paid = invoice.get("amount_paid")
        due = invoice.get("amount_due")
        event.provider_customer_id = _id_of(invoice.get("customer"))
        event.provider_invoice_id = invoice.get("id")
        event.provider_transaction_id = _id_of(invoice.get("payment_intent")) or _id_of(invoice.get("charge")) or invoice.get("id")
        event.amount = _from_minor_units(paid if paid else due, currency)
        event.currency = currency.upper() if currency else None
        event.attempt_count = int(invoice.get("attempt_count") or 0)
        event.billing_reason = invoice.get("billing_reason")
        event.period_start = _ts(invoice.get("period_start"))
        event.period_end = _ts(invoice.get("period_end"))
        details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
        event.provider_subscription_id = _id_of(invoice.get("subscription")) or _id_of(details.get("subscription"))
        event.client_reference_id = (
            (invoice.get("metadata") or {}).get("subscription_id")
            or (details.get("metadata") or {}).get("subscription_id")
        )
        if event.category == EventCategory.payment_failed:
            intent = invoice.get("payment_intent")
            error = (intent.get("last_payment_error") if isinstance(intent, dict) else None) or invoice.get("last_payment_error") or {}
            event.failure_code = error.get("code")
            event.failure_message = error.get("message") or "Payment failed"
        event.payment_method_id = _id_of(invoice.get("default_payment_method"))

    @staticmethod
    def _fill_from_subscription(event: ProviderEvent, subscription: dict) -> None:
        event.provider_subscription_id = subscription.get("id")
        event.provider_customer_id = _id_of(subscription.get("customer"))
        event.client_reference_id = (subscription.get("metadata") or {}).get("subscription_id")
        event.period_start = _ts(subscription.get("current_period_start"))
        event.period_end = _ts(subscription.get("current_period_end"))
        event.payment_method_id = _id_of(subscription.get("default_payment_method"))
        event.charge_attempt = False
        if subscription.get("status") in ("past_due", "unpaid"):
            event.failure_code = subscription.get("status")

    @staticmethod
    def _fill_from_checkout(event: ProviderEvent, session: dict) -> None:
        currency = session.get("currency")
        event.provider_subscription_id = _id_of(session.get("subscription"))
        event.provider_customer_id = _id_of(session.get("customer"))
        event.client_reference_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("subscription_id")
        event.provider_transaction_id = session.get("id")
        event.amount = _from_minor_units(session.get("amount_total"), currency)
        event.currency = currency.upper() if currency else None
        event.payment_completed = session.get("payment_status") == "paid"

    async def create_checkout_session(
        self,
        subscription: Subscription,
        plan: Plan,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        if not self._config.api_key:
            raise ProviderError("Stripe API key is not configured.")

        currency = subscription.currency.lower()
        lifetime = plan.billing_model == BillingModel.lifetime
        price_data: dict[str, Any] = {
            "currency": currency,
            "unit_amount": _minor_units(subscription.amount, currency),
            "product_data": {"name": plan.display_name},
        }
        if not lifetime:
            price_data["recurring"] = {
                "interval": "year" if subscription.billing_cycle == BillingCycle.yearly else "month",
            }
        reference = {"subscription_id": str(subscription.id), "user_id": str(subscription.user_id)}
        params: dict[str, Any] = {
            "mode": "payment" if lifetime else "subscription",
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "client_reference_id": str(subscription.id),
            "success_url": self._config.success_url,
            "cancel_url": self._config.cancel_url,
            "metadata": reference,
        }
        if lifetime:
            params["payment_intent_data"] = {"metadata": reference}
        else:
            params["subscription_data"] = {"metadata": reference}
        if subscription.provider_customer_id:
            params["customer"] = subscription.provider_customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        client = stripe.StripeClient(
            self._config.api_key,
            max_network_retries=self._config.max_network_retries,
        )
        try:
            session = await asyncio.wait_for(
                asyncio.to_thread(client.checkout.sessions.create, params=params),
                timeout=self._config.request_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientProviderError("Stripe did not answer in time.") from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise TransientProviderError(f"Stripe unavailable: {e.user_message or e}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected checkout for {subscription.id}: {e}")
            raise ProviderError(f"Stripe rejected the checkout request: {e.user_message or e}") from e

        logger.info(f"Stripe checkout session {session.id} for subscription {subscription.id}")
        return CheckoutSession(session_id=session.id, url=session.url)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)
