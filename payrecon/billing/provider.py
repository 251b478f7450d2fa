import hashlib
import logging
from typing import Any, Dict, Optional

import stripe
from stripe import StripeClient

from payrecon.observability import log_event
from .errors import ProviderError, ProviderTimeout
from .settings import BillingSettings


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "payrecon:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def as_dict(obj) -> Optional[Dict[str, Any]]:
    """Stripe objects may need converting to plain dicts."""
    if obj is None:
        return None
    for name in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, name, None)
        if callable(fn):
            return fn()
    return dict(obj)


class StripeGateway:
    """
    Thin wrapper over ``StripeClient``. Every call has a bounded timeout; SDK
    errors come back as ``ProviderError`` / ``ProviderTimeout`` and results as
    plain dicts.
    """

    def __init__(self, settings: BillingSettings, client: Optional[StripeClient] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> StripeClient:
        if self._client is None:
            key = self.settings.secret_key
            if not key:
                raise ProviderError("Payments are not configured.", provider_code="no_api_key")
            self._client = StripeClient(
                key,
                stripe_version=self.settings.api_version or None,
                max_network_retries=self.settings.max_network_retries,
                http_client=stripe.RequestsClient(timeout=self.settings.timeout_seconds),
            )
        return self._client

    def _call(self, op: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.APIConnectionError as e:
            log_event("provider.timeout", logging.WARNING, op=op, error=type(e).__name__)
            raise ProviderTimeout(op=op) from e
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            log_event("provider.error", logging.WARNING, op=op, provider_code=code, http_status=e.http_status)
            raise ProviderError(
                getattr(e, "user_message", None) or None,
                provider_code=code,
                op=op,
                detail=str(e),
            ) from e

    # --- customers ---
    def find_or_create_customer(self, email: str) -> str:
        found = self._call("customers.list", self.client.customers.list, params={"email": email, "limit": 1})
        data = (as_dict(found) or {}).get("data") or []
        if data:
            return data[0]["id"]
        customer = self._call(
            "customers.create",
            self.client.customers.create,
            params={"email": email},
            options={"idempotency_key": make_idempotency_key("customer", email)},
        )
        log_event("provider.customer_created", customer=customer["id"])
        return customer["id"]

    # --- payments ---
    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        email: str,
        description: str = "",
    ) -> Dict[str, Any]:
        params = {
            "amount": amount,
            "currency": currency,
            "customer": customer_id,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"email": email, "item_name": description},
        }
        if description:
            params["description"] = description
        intent = self._call("payment_intents.create", self.client.payment_intents.create, params=params)
        return as_dict(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        intent = self._call("payment_intents.retrieve", self.client.payment_intents.retrieve, payment_intent_id)
        return as_dict(intent)

    def create_refund(self, payment_intent_id: str) -> Dict[str, Any]:
        refund = self._call(
            "refunds.create",
            self.client.refunds.create,
            params={"payment_intent": payment_intent_id, "reason": "requested_by_customer"},
            options={"idempotency_key": make_idempotency_key("refund", payment_intent_id)},
        )
        return as_dict(refund)

    # --- subscriptions ---
    def create_subscription(self, *, customer_id: str, price_id: str, email: str) -> Dict[str, Any]:
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": {"email": email, "plan_id": price_id},
        }
        sub = self._call("subscriptions.create", self.client.subscriptions.create, params=params)
        return as_dict(sub)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sub = self._call("subscriptions.cancel", self.client.subscriptions.cancel, subscription_id)
        return as_dict(sub)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sub = self._call("subscriptions.retrieve", self.client.subscriptions.retrieve, subscription_id)
        return as_dict(sub)

    def price_display_name(self, price_id: str) -> str:
        """Product name for a price; falls back to the price id."""
        price = as_dict(
            self._call(
                "prices.retrieve",
                self.client.prices.retrieve,
                price_id,
                params={"expand": ["product"]},
            )
        ) or {}
        product = price.get("product")
        if isinstance(product, dict) and product.get("name"):
            return product["name"]
        return price.get("nickname") or price_id
