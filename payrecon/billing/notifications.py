"""
Outbound billing notifications.

Each context has an admin and a customer message; both are plain text built
from ``{placeholder}`` templates. Subjects and bodies can be overridden per
context through ``NOTIFY_TEMPLATES`` and each side is toggled independently.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from payrecon.observability import log_event
from payrecon.services.email import send_email
from payrecon.utils.validators import is_valid_email
from .settings import BillingSettings

SIGNUP_ONETIME = "signup_onetime"
SIGNUP_SUBSCRIPTION = "signup_subscription"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_CANCELED = "subscription_canceled"

DEFAULT_TEMPLATES: Dict[str, Dict[str, str]] = {
    SIGNUP_ONETIME: {
        "admin_subject": "[{site_name}] New one-time payment",
        "admin_body": (
            "A one-time payment was completed.\n\n"
            "Customer email: {customer_email}\nItem: {item_name}\nAmount: {amount}\n"
            "Date: {transaction_date}\n\nPayment Intent ID: {payment_intent_id}\n"
            "Customer ID: {customer_id}\nUser ID: {user_id}"
        ),
        "customer_subject": "[{site_name}] Thank you for your purchase",
        "customer_body": (
            "Hello {user_name},\n\nThank you for purchasing \"{item_name}\".\n"
            "Amount: {amount}\nDate: {transaction_date}\n\n--\n{site_name}\n{site_url}"
        ),
    },
    SIGNUP_SUBSCRIPTION: {
        "admin_subject": "[{site_name}] New subscription",
        "admin_body": (
            "A new subscription was started.\n\n"
            "Customer email: {customer_email}\nPlan: {item_name} ({plan_id})\n"
            "Customer ID: {customer_id}\nSubscription ID: {subscription_id}\nUser ID: {user_id}"
        ),
        "customer_subject": "[{site_name}] Welcome to your subscription",
        "customer_body": (
            "Hello {user_name},\n\nThank you for subscribing to \"{item_name}\".\n\n--\n{site_name}\n{site_url}"
        ),
    },
    PAYMENT_FAILED: {
        "admin_subject": "[{site_name}] Subscription payment failed",
        "admin_body": (
            "A subscription payment failed.\n\n"
            "Customer email: {customer_email}\nSubscription ID: {subscription_id}\n"
            "Plan: {item_name} ({plan_id})\nAmount: {amount}"
        ),
        "customer_subject": "[{site_name}] Please update your payment details",
        "customer_body": (
            "Hello {user_name},\n\nWe could not collect the payment for \"{item_name}\".\n"
            "Please update your card details to keep your subscription active.\n\n--\n{site_name}\n{site_url}"
        ),
    },
    SUBSCRIPTION_CANCELED: {
        "admin_subject": "[{site_name}] Subscription canceled",
        "admin_body": (
            "A subscription was canceled.\n\n"
            "Customer email: {customer_email}\nSubscription ID: {subscription_id}\n"
            "Plan: {item_name} ({plan_id})"
        ),
        "customer_subject": "[{site_name}] Your subscription has ended",
        "customer_body": (
            "Hello {user_name},\n\nYour subscription to \"{item_name}\" has been canceled.\n\n"
            "--\n{site_name}\n{site_url}"
        ),
    },
}


def format_amount(amount: Any, currency: Optional[str]) -> str:
    """1000 jpy -> '1,000円'; 1050 usd -> '$10.50'; otherwise '1,000 EUR'."""
    try:
        value = int(amount or 0)
    except (TypeError, ValueError):
        value = 0
    cur = (currency or "jpy").lower()
    if cur == "jpy":
        return f"{value:,}円"
    if cur == "usd":
        return f"${value / 100:,.2f}"
    return f"{value:,} {cur.upper()}"


def render(template: str, replacements: Mapping[str, str]) -> str:
    out = template
    for key, val in replacements.items():
        out = out.replace("{" + key + "}", val)
    return out


class NotificationDispatcher:
    def __init__(self, settings: BillingSettings, sender: Callable[..., bool] = send_email):
        self.settings = settings
        self.sender = sender

    def _templates(self, context: str) -> Dict[str, str]:
        merged = dict(DEFAULT_TEMPLATES[context])
        merged.update(self.settings.notify_templates.get(context) or {})
        return merged

    def _enabled(self, context: str, side: str) -> bool:
        return bool(self.settings.notify_toggles.get(f"{context}.{side}", False))

    def _replacements(self, data: Mapping[str, Any], customer_email: Optional[str]) -> Dict[str, str]:
        when = data.get("created_at")
        if isinstance(when, (int, float)):
            when = datetime.fromtimestamp(when, tz=timezone.utc)
        if not isinstance(when, datetime):
            when = datetime.now(timezone.utc)
        return {
            "item_name": str(data.get("item_name") or ""),
            "amount": format_amount(data.get("amount"), data.get("currency")),
            "customer_email": customer_email or "",
            "payment_intent_id": str(data.get("payment_intent_id") or "N/A"),
            "customer_id": str(data.get("customer_id") or "N/A"),
            "transaction_date": when.strftime("%Y-%m-%d %H:%M UTC"),
            "user_name": str(data.get("user_name") or customer_email or ""),
            "user_id": str(data.get("user_id") or "N/A"),
            "site_name": self.settings.site_name,
            "site_url": self.settings.site_url,
            "subscription_id": str(data.get("subscription_id") or "N/A"),
            "plan_id": str(data.get("plan_id") or "N/A"),
        }

    def dispatch(
        self,
        context: str,
        data: Mapping[str, Any],
        customer_email: Optional[str] = None,
    ) -> Dict[str, bool]:
        """
        Send the admin and/or customer message for ``context``.
        Returns which sides were sent. Mail failures are logged, never raised.
        """
        sent = {"admin": False, "customer": False}
        if context not in DEFAULT_TEMPLATES:
            log_event("notify.unknown_context", logging.WARNING, context=context)
            return sent

        tpl = self._templates(context)
        repl = self._replacements(data, customer_email)
        user_id = data.get("user_id")

        admin_to = self.settings.admin_notify_email
        if self._enabled(context, "admin"):
            if is_valid_email(admin_to):
                sent["admin"] = self.sender(
                    admin_to,
                    render(tpl["admin_subject"], repl),
                    render(tpl["admin_body"], repl),
                    template=f"{context}.admin",
                )
            else:
                log_event("notify.admin_address_invalid", logging.WARNING, context=context)

        if self._enabled(context, "customer"):
            if is_valid_email(customer_email):
                sent["customer"] = self.sender(
                    customer_email,
                    render(tpl["customer_subject"], repl),
                    render(tpl["customer_body"], repl),
                    template=f"{context}.customer",
                    user_id=user_id if isinstance(user_id, int) else None,
                )
            else:
                log_event("notify.customer_address_invalid", logging.WARNING, context=context)

        log_event("notify.dispatched", context=context, **sent)
        return sent
